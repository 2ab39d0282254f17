from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assetdesk.core.config import settings
from assetdesk.core.security import decode_token
from assetdesk.db.session import get_session
from assetdesk.models.asset import Asset
from assetdesk.models.user import User
from assetdesk.services import render_jobs
from assetdesk.services.dispatch_lock import DispatchLockStore, get_lock_store
from assetdesk.services.pdf_pages import PageRenderCoordinator
from assetdesk.services.pdf_render import StoragePageCounter
from assetdesk.services.storage import ObjectStorage, get_storage

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_object_storage() -> ObjectStorage:
    return get_storage()


def get_dispatch_locks() -> DispatchLockStore:
    return get_lock_store()


async def get_page_coordinator(
    session: AsyncSession = Depends(get_session),
    storage: ObjectStorage = Depends(get_object_storage),
    locks: DispatchLockStore = Depends(get_dispatch_locks),
) -> PageRenderCoordinator:
    async def dispatch(asset: Asset, page: int) -> None:
        await render_jobs.dispatch_page_render(session, asset, page)

    return PageRenderCoordinator(
        storage=storage,
        locks=locks,
        dispatch=dispatch,
        count_pages=StoragePageCounter(storage),
        max_allowed_pages=settings.pdf_max_allowed_pages,
        lock_ttl_seconds=settings.pdf_render_lock_ttl_seconds,
        url_ttl_seconds=settings.pdf_page_url_ttl_seconds,
    )
