import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from assetdesk.core.dependencies import get_current_user, get_page_coordinator
from assetdesk.db.session import get_session
from assetdesk.models.asset import Asset
from assetdesk.models.user import User
from assetdesk.schemas.error import MessageResponse
from assetdesk.schemas.pdf_pages import (
    PdfExtractionStarted,
    PdfPageReady,
    RenderBatchRead,
)
from assetdesk.services import render_jobs
from assetdesk.services.access import can_extract_all_pages, can_view_asset
from assetdesk.services.pdf_pages import PageRejected, PageRenderCoordinator, RenderDispatchError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assets", tags=["pdf-pages"])

DISPATCH_FAILED_MESSAGE = "PDF page render could not be queued"
EXTRACTION_FAILED_MESSAGE = "PDF extraction could not be started"


async def _load_visible_asset(session: AsyncSession, asset_id: UUID, user: User) -> Asset:
    asset = await session.get(Asset, asset_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")
    if not await can_view_asset(session, user, asset):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this asset")
    return asset


@router.get(
    "/{asset_id}/pdf-page/{page}",
    responses={
        200: {"model": PdfPageReady, "description": "Rendered page URL, or a processing status to poll"},
        422: {"model": MessageResponse},
        503: {"model": MessageResponse},
    },
)
async def get_pdf_page(
    asset_id: UUID,
    page: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: PageRenderCoordinator = Depends(get_page_coordinator),
) -> JSONResponse:
    asset = await _load_visible_asset(session, asset_id, user)
    try:
        outcome = await coordinator.resolve_page(asset, page)
    except RenderDispatchError:
        await session.rollback()
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"message": DISPATCH_FAILED_MESSAGE})
    # Persist a freshly discovered page count.
    await session.commit()
    if isinstance(outcome, PageRejected):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=outcome.to_payload())
    return JSONResponse(status_code=status.HTTP_200_OK, content=outcome.to_payload())


@router.post(
    "/{asset_id}/pdf/extract-all",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=PdfExtractionStarted,
    responses={422: {"model": MessageResponse}},
)
async def extract_all_pdf_pages(
    asset_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: PageRenderCoordinator = Depends(get_page_coordinator),
):
    asset = await _load_visible_asset(session, asset_id, user)
    if not await can_extract_all_pages(session, user, asset):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only tenant owners and admins can extract all PDF pages",
        )
    checked = await coordinator.check_document(asset)
    if isinstance(checked, PageRejected):
        await session.commit()
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=checked.to_payload())

    try:
        batch = await render_jobs.start_full_extraction(
            session, asset=asset, page_count=checked, requested_by_user_id=user.id
        )
    except Exception:
        logger.exception("pdf_full_extraction_failed", extra={"asset_id": str(asset.id)})
        await session.rollback()
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"message": EXTRACTION_FAILED_MESSAGE})
    return PdfExtractionStarted(batch_id=batch.id, total_jobs=batch.total_jobs, pending_jobs=batch.pending_jobs)


@router.get("/{asset_id}/pdf/batches/{batch_id}", response_model=RenderBatchRead)
async def get_extraction_batch(
    asset_id: UUID,
    batch_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> RenderBatchRead:
    asset = await _load_visible_asset(session, asset_id, user)
    batch = await render_jobs.get_batch(session, asset_id=asset.id, batch_id=batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return RenderBatchRead.model_validate(batch)
