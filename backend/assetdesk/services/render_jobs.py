from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID, uuid4

import anyio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assetdesk.core import metrics
from assetdesk.core.config import settings
from assetdesk.core.redis_client import await_if_needed, get_redis
from assetdesk.models.asset import Asset
from assetdesk.models.render import RenderBatch, RenderBatchStatus, RenderJob, RenderJobStatus
from assetdesk.services import pdf_render
from assetdesk.services.artifacts import ArtifactKind, content_type_for, storage_key_for
from assetdesk.services.storage import ObjectStorage, get_storage

logger = logging.getLogger(__name__)

QUEUE_KEY = str(settings.pdf_render_queue_key or "pdf:render:queue")
RETRY_BACKOFF_SECONDS = (30, 120, 600)
DEFAULT_MAX_ATTEMPTS = max(1, int(settings.pdf_render_max_attempts or 3))
TERMINAL_STATUSES = frozenset({RenderJobStatus.completed, RenderJobStatus.dead_letter, RenderJobStatus.skipped})


class _SkipJob(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _retry_delay_seconds(*, attempt: int, max_attempts: int) -> int | None:
    if attempt >= max_attempts:
        return None
    idx = max(1, int(attempt)) - 1
    if idx < len(RETRY_BACKOFF_SECONDS):
        return RETRY_BACKOFF_SECONDS[idx]
    return RETRY_BACKOFF_SECONDS[-1]


def apply_large_pdf_guardrail(asset: Asset, page_count: int, *, max_pages: int | None = None) -> bool:
    """Flag the asset as unsupported when it has too many pages. The flag is never cleared here."""
    if asset.pdf_unsupported_large:
        return True
    limit = int(max_pages if max_pages is not None else settings.pdf_max_allowed_pages)
    if int(page_count) > limit:
        asset.pdf_unsupported_large = True
        logger.warning(
            "pdf_unsupported_large",
            extra={"asset_id": str(asset.id), "page_count": int(page_count), "max_allowed_pages": limit},
        )
        return True
    return False


def _new_job(*, asset_id: UUID, page: int, batch_id: UUID | None, max_attempts: int | None) -> RenderJob:
    return RenderJob(
        id=uuid4(),
        asset_id=asset_id,
        page=int(page),
        batch_id=batch_id,
        status=RenderJobStatus.queued,
        attempt=0,
        max_attempts=max(1, int(max_attempts or DEFAULT_MAX_ATTEMPTS)),
    )


async def queue_job(job_id: UUID) -> None:
    redis = get_redis()
    if redis is None:
        return
    await await_if_needed(redis.rpush(QUEUE_KEY, str(job_id)))


async def _queue_or_defer(session: AsyncSession, jobs: list[RenderJob]) -> None:
    """Push committed jobs; any job the queue refused is parked for the retry sweep before re-raising."""
    pushed: set[UUID] = set()
    try:
        for job in jobs:
            await queue_job(job.id)
            pushed.add(job.id)
    except Exception as exc:
        retry_at = _now() + timedelta(seconds=RETRY_BACKOFF_SECONDS[0])
        for job in jobs:
            if job.id in pushed:
                continue
            job.status = RenderJobStatus.failed
            job.error_code = "queue_failed"
            job.error_message = str(exc)
            job.next_retry_at = retry_at
            session.add(job)
        await session.commit()
        logger.warning(
            "render_job_queue_failed",
            extra={"deferred_jobs": len(jobs) - len(pushed), "error": str(exc)},
        )
        raise


async def enqueue_page_render(
    session: AsyncSession,
    *,
    asset: Asset,
    page: int,
    batch_id: UUID | None = None,
    max_attempts: int | None = None,
) -> RenderJob:
    job = _new_job(asset_id=asset.id, page=page, batch_id=batch_id, max_attempts=max_attempts)
    session.add(job)
    await session.flush()
    return job


async def dispatch_page_render(session: AsyncSession, asset: Asset, page: int) -> RenderJob:
    """Persist one render job for (asset, page) and hand it to the worker queue."""
    job = await enqueue_page_render(session, asset=asset, page=page)
    await session.commit()
    await _queue_or_defer(session, [job])
    return job


async def get_running_batch(session: AsyncSession, asset: Asset) -> RenderBatch | None:
    if asset.full_pdf_extraction_batch_id is None:
        return None
    batch = await session.get(RenderBatch, asset.full_pdf_extraction_batch_id)
    if batch is None or batch.status != RenderBatchStatus.running:
        return None
    return batch


async def start_full_extraction(
    session: AsyncSession,
    *,
    asset: Asset,
    page_count: int,
    requested_by_user_id: UUID | None,
) -> RenderBatch:
    """Create a batch with one render job per page; an already running batch is returned as is."""
    running = await get_running_batch(session, asset)
    if running is not None:
        return running

    total = max(0, int(page_count))
    batch = RenderBatch(
        id=uuid4(),
        asset_id=asset.id,
        total_jobs=total,
        pending_jobs=total,
        failed_jobs=0,
        status=RenderBatchStatus.running,
        requested_by_user_id=requested_by_user_id,
    )
    session.add(batch)
    await session.flush()
    jobs = [_new_job(asset_id=asset.id, page=page, batch_id=batch.id, max_attempts=None) for page in range(1, total + 1)]
    session.add_all(jobs)
    asset.full_pdf_extraction_batch_id = batch.id
    asset.pdf_pages_rendered = False
    session.add(asset)
    await session.commit()
    await _queue_or_defer(session, jobs)
    logger.info(
        "pdf_full_extraction_started",
        extra={"asset_id": str(asset.id), "batch_id": str(batch.id), "total_jobs": total},
    )
    return batch


async def get_batch(session: AsyncSession, *, asset_id: UUID, batch_id: UUID) -> RenderBatch | None:
    batch = await session.get(RenderBatch, batch_id)
    if batch is None or batch.asset_id != asset_id:
        return None
    return batch


async def get_job(session: AsyncSession, job_id: UUID) -> RenderJob | None:
    return await session.get(RenderJob, job_id)


async def _settle_batch(session: AsyncSession, job: RenderJob, asset: Asset | None) -> None:
    if job.batch_id is None:
        return
    failed_inc = 0 if job.status == RenderJobStatus.completed else 1
    await session.execute(
        update(RenderBatch)
        .where(RenderBatch.id == job.batch_id, RenderBatch.pending_jobs > 0)
        .values(
            pending_jobs=RenderBatch.pending_jobs - 1,
            failed_jobs=RenderBatch.failed_jobs + failed_inc,
        )
    )
    batch = await session.get(RenderBatch, job.batch_id, populate_existing=True)
    if batch is None or batch.pending_jobs > 0 or batch.status != RenderBatchStatus.running:
        return
    batch.finished_at = _now()
    if batch.failed_jobs:
        batch.status = RenderBatchStatus.failed
    else:
        batch.status = RenderBatchStatus.completed
        if asset is not None:
            asset.pdf_pages_rendered = True
    logger.info(
        "pdf_full_extraction_finished",
        extra={"batch_id": str(batch.id), "status": batch.status.value, "failed_jobs": batch.failed_jobs},
    )


async def _render_job_page(job: RenderJob, asset: Asset, storage: ObjectStorage) -> None:
    key = storage_key_for(ArtifactKind.pdf_page, asset, page=job.page)
    if await anyio.to_thread.run_sync(storage.exists, key):
        job.storage_key = key
        return

    counter = pdf_render.StoragePageCounter(storage)
    page_count = int(await anyio.to_thread.run_sync(counter, asset) or 0)
    if page_count < 1:
        raise pdf_render.PdfRenderError("PDF page count unavailable")
    if not asset.pdf_page_count:
        asset.pdf_page_count = page_count
    if apply_large_pdf_guardrail(asset, page_count):
        raise _SkipJob("unsupported_large", f"PDF page count {page_count} exceeds allowed limit")
    if job.page > page_count:
        raise _SkipJob("page_out_of_range", f"Page {job.page} exceeds PDF page count {page_count}")

    temp_path: Path = await anyio.to_thread.run_sync(pdf_render.download_source_to_temp, storage, asset)
    try:
        rendered = await anyio.to_thread.run_sync(pdf_render.render_page_to_webp, temp_path, job.page)
    finally:
        temp_path.unlink(missing_ok=True)

    metadata = {
        "original-asset-id": str(asset.id),
        "pdf-page": str(job.page),
        "generated-at": _now().isoformat(),
    }

    def _upload() -> None:
        storage.put_bytes(key, rendered.data, content_type=content_type_for(ArtifactKind.pdf_page, asset), metadata=metadata)

    await anyio.to_thread.run_sync(_upload)
    job.storage_key = key


async def process_job_inline(session: AsyncSession, job: RenderJob, *, storage: ObjectStorage | None = None) -> RenderJob:
    storage = storage or get_storage()
    job.status = RenderJobStatus.processing
    job.started_at = _now()
    job.attempt = int(job.attempt or 0) + 1
    job.next_retry_at = None
    session.add(job)
    await session.flush()

    asset = await session.get(Asset, job.asset_id)
    try:
        if asset is None:
            raise _SkipJob("asset_missing", "Asset no longer exists")
        await _render_job_page(job, asset, storage)
        job.status = RenderJobStatus.completed
        job.error_code = None
        job.error_message = None
        job.completed_at = _now()
        metrics.record_render_completed()
    except _SkipJob as skip:
        job.status = RenderJobStatus.skipped
        job.error_code = skip.code
        job.error_message = str(skip)
        job.completed_at = _now()
        logger.info("render_job_skipped", extra={"job_id": str(job.id), "reason": skip.code})
    except Exception as exc:
        now = _now()
        delay = _retry_delay_seconds(attempt=int(job.attempt or 0), max_attempts=int(job.max_attempts or DEFAULT_MAX_ATTEMPTS))
        job.error_code = "render_failed"
        job.error_message = str(exc)
        job.completed_at = now
        metrics.record_render_failed()
        if delay is None:
            job.status = RenderJobStatus.dead_letter
            logger.error("render_job_dead_lettered", extra={"job_id": str(job.id), "error": str(exc)})
        else:
            job.status = RenderJobStatus.failed
            job.next_retry_at = now + timedelta(seconds=delay)
            logger.warning(
                "render_job_retry_scheduled",
                extra={"job_id": str(job.id), "attempt": job.attempt, "retry_in_seconds": delay, "error": str(exc)},
            )

    if job.status in TERMINAL_STATUSES:
        await _settle_batch(session, job, asset)
    session.add(job)
    if asset is not None:
        session.add(asset)
    await session.commit()
    await session.refresh(job)
    return job


async def enqueue_due_retries(session: AsyncSession, *, limit: int = 50) -> list[UUID]:
    now = _now()
    rows = await session.execute(
        select(RenderJob)
        .where(RenderJob.status == RenderJobStatus.failed, RenderJob.next_retry_at.is_not(None), RenderJob.next_retry_at <= now)
        .order_by(RenderJob.next_retry_at.asc())
        .limit(max(1, min(int(limit or 1), 500)))
    )
    jobs = list(rows.scalars().all())
    for job in jobs:
        job.status = RenderJobStatus.queued
        job.next_retry_at = None
        session.add(job)
    await session.commit()
    queued: list[UUID] = []
    for job in jobs:
        await queue_job(job.id)
        queued.append(job.id)
    return queued
