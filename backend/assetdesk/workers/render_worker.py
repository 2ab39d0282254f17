from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import select

from assetdesk.core.config import settings
from assetdesk.core.logging_config import configure_logging
from assetdesk.core.redis_client import await_if_needed, get_redis
from assetdesk.db.session import SessionLocal
from assetdesk.models.render import RenderJob, RenderJobStatus
from assetdesk.services import render_jobs

logger = logging.getLogger(__name__)
QUEUE_KEY = render_jobs.QUEUE_KEY
HEARTBEAT_PREFIX = str(settings.render_worker_heartbeat_prefix or "pdf:render:workers:heartbeat")
HEARTBEAT_TTL_SECONDS = max(10, int(settings.render_worker_heartbeat_ttl_seconds or 30))
RETRY_SWEEP_SECONDS = max(5, int(settings.render_worker_retry_sweep_seconds or 10))
FALLBACK_JOB_BATCH_SIZE = 10
FALLBACK_MAX_SLEEP_SECONDS = 5.0


async def process_job_id(raw_job_id: str) -> RenderJob | None:
    try:
        job_id = UUID(str(raw_job_id))
    except ValueError:
        logger.warning("render_worker_invalid_job_id", extra={"raw": str(raw_job_id)[:64]})
        return None
    async with SessionLocal() as session:
        try:
            job = await render_jobs.get_job(session, job_id)
            if job is None:
                logger.warning("render_worker_job_missing", extra={"job_id": str(job_id)})
                return None
            if job.status in render_jobs.TERMINAL_STATUSES:
                return job
            return await render_jobs.process_job_inline(session, job)
        except Exception:
            logger.exception("render_worker_job_failed", extra={"job_id": str(job_id)})
            return None


async def enqueue_due_retries_once(limit: int = 50) -> int:
    async with SessionLocal() as session:
        try:
            queued = await render_jobs.enqueue_due_retries(session, limit=limit)
            if queued:
                logger.info("render_worker_retry_enqueued", extra={"count": len(queued)})
            return len(queued)
        except Exception:
            logger.exception("render_worker_retry_sweep_failed")
            return 0


async def process_queued_jobs_once(limit: int = FALLBACK_JOB_BATCH_SIZE) -> int:
    async with SessionLocal() as session:
        rows = await session.execute(
            select(RenderJob)
            .where(RenderJob.status == RenderJobStatus.queued)
            .order_by(RenderJob.created_at.asc())
            .limit(max(1, min(int(limit or 1), 500)))
        )
        jobs = rows.scalars().all()
        processed = 0
        for job in jobs:
            try:
                await render_jobs.process_job_inline(session, job)
                processed += 1
            except Exception:
                logger.exception("render_worker_fallback_job_failed", extra={"job_id": str(job.id)})
        return processed


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(worker_id: str) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "app_version": (settings.app_version or "").strip() or None,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


async def publish_heartbeat(redis, *, worker_id: str) -> None:
    key = f"{HEARTBEAT_PREFIX}:{worker_id}"
    payload = json.dumps(_heartbeat_payload(worker_id), separators=(",", ":"))
    await await_if_needed(redis.set(key, payload, ex=HEARTBEAT_TTL_SECONDS))


def _normalize_job_id_candidate(raw: object) -> str | None:
    if isinstance(raw, bytes):
        candidate = raw.decode("utf-8", errors="ignore")
    else:
        candidate = str(raw)
    candidate = candidate.strip()
    if not candidate:
        logger.warning("render_worker_invalid_job_payload", extra={"raw_type": type(raw).__name__})
        return None
    return candidate


async def pop_and_process(redis, *, timeout_seconds: int = 2) -> RenderJob | None:
    result = await await_if_needed(redis.blpop([QUEUE_KEY], timeout=max(1, int(timeout_seconds))))
    if not result:
        return None
    _, raw = result
    candidate = _normalize_job_id_candidate(raw)
    if candidate is None:
        return None
    return await process_job_id(candidate)


async def _run_degraded_worker_loop(*, worker_id: str, poll_seconds: float) -> None:
    logger.warning("render_worker_degraded_mode_started", extra={"worker_id": worker_id, "poll_interval_seconds": poll_seconds})
    last_retry_sweep = 0.0
    while True:
        try:
            now = time.monotonic()
            if now - last_retry_sweep >= float(RETRY_SWEEP_SECONDS):
                await enqueue_due_retries_once(limit=100)
                last_retry_sweep = now
            await process_queued_jobs_once()
            await asyncio.sleep(poll_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("render_worker_degraded_loop_error", extra={"worker_id": worker_id})
            await asyncio.sleep(poll_seconds)


async def _run_redis_worker_loop(*, redis, worker_id: str, poll_interval_seconds: float) -> None:
    logger.info("render_worker_started", extra={"worker_id": worker_id})
    heartbeat_interval = max(5.0, float(HEARTBEAT_TTL_SECONDS) / 2.0)
    last_heartbeat = 0.0
    last_retry_sweep = 0.0
    while True:
        try:
            now = time.monotonic()
            if now - last_heartbeat >= heartbeat_interval:
                await publish_heartbeat(redis, worker_id=worker_id)
                last_heartbeat = now
            if now - last_retry_sweep >= float(RETRY_SWEEP_SECONDS):
                await enqueue_due_retries_once(limit=100)
                last_retry_sweep = now
            await pop_and_process(redis, timeout_seconds=max(1, int(poll_interval_seconds)))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("render_worker_loop_error")
            await asyncio.sleep(max(0.5, poll_interval_seconds))


async def run_render_worker(poll_interval_seconds: float = 2.0) -> None:
    redis = get_redis()
    worker_id = _worker_id()
    if redis is None:
        bounded = min(FALLBACK_MAX_SLEEP_SECONDS, max(0.1, float(poll_interval_seconds)))
        await _run_degraded_worker_loop(worker_id=worker_id, poll_seconds=bounded)
        return
    await _run_redis_worker_loop(redis=redis, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds)


def main() -> None:  # pragma: no cover
    configure_logging(settings.log_json)
    asyncio.run(run_render_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
