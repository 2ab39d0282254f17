"""Render-or-serve coordination for individual PDF pages.

A page request ends in one of three outcomes:

* ``PageReady``      - the rendered page exists in object storage; a signed URL is returned.
* ``PageProcessing`` - the page is missing; a render job was dispatched now or earlier.
* ``PageRejected``   - the request can never succeed as asked (bad page, not a PDF, too large...).

Validation runs before any side effect. Duplicate dispatches are collapsed with a short-lived
set-if-absent lock keyed by (asset, version, page); the lock expiring without an artifact lets the
next request dispatch again. Clients poll ``resolve_page`` until the page is ready.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

import anyio

from assetdesk.core import metrics
from assetdesk.models.asset import Asset
from assetdesk.services.artifacts import ArtifactKind, is_pdf_asset, storage_key_for
from assetdesk.services.dispatch_lock import DispatchLockStore, page_render_lock_key
from assetdesk.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

DispatchFn = Callable[[Asset, int], Awaitable[None]]
PageCountFn = Callable[[Asset], int]


class RejectionReason(str, enum.Enum):
    invalid_page = "invalid_page"
    not_pdf = "not_pdf"
    page_count_unavailable = "page_count_unavailable"
    unsupported_large = "unsupported_large"
    page_exceeds_count = "page_exceeds_count"


class RenderDispatchError(RuntimeError):
    """The render job could not be handed to the job runtime."""


@dataclass(frozen=True, slots=True)
class PageReady:
    url: str
    page: int
    page_count: int

    def to_payload(self) -> dict[str, Any]:
        return {"status": "ready", "url": self.url, "page": self.page, "page_count": self.page_count}


@dataclass(frozen=True, slots=True)
class PageProcessing:
    page: int
    page_count: int
    # True when this call submitted the job; not part of the response body.
    dispatched: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"status": "processing", "page": self.page, "page_count": self.page_count}


@dataclass(frozen=True, slots=True)
class PageRejected:
    reason: RejectionReason
    message: str
    page_count: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.reason == RejectionReason.unsupported_large:
            payload = {"status": "unsupported_large", "message": self.message}
        if self.page_count is not None:
            payload["page_count"] = self.page_count
        return payload


PageOutcome = Union[PageReady, PageProcessing, PageRejected]


def _reject(reason: RejectionReason, message: str, page_count: int | None = None) -> PageRejected:
    metrics.record_pdf_page_rejected(reason.value)
    return PageRejected(reason=reason, message=message, page_count=page_count)


class PageRenderCoordinator:
    def __init__(
        self,
        *,
        storage: ObjectStorage,
        locks: DispatchLockStore,
        dispatch: DispatchFn,
        count_pages: PageCountFn,
        max_allowed_pages: int,
        lock_ttl_seconds: int = 20,
        url_ttl_seconds: int = 600,
    ) -> None:
        self.storage = storage
        self.locks = locks
        self.dispatch = dispatch
        self.count_pages = count_pages
        self.max_allowed_pages = int(max_allowed_pages)
        self.lock_ttl_seconds = int(lock_ttl_seconds)
        self.url_ttl_seconds = int(url_ttl_seconds)

    async def resolve_page_count(self, asset: Asset) -> int:
        stored = int(asset.pdf_page_count or 0)
        if stored > 0:
            return stored
        count = int(await anyio.to_thread.run_sync(self.count_pages, asset) or 0)
        if count > 0:
            # Concurrent discoveries write the same value; last write wins.
            asset.pdf_page_count = count
        return count

    async def check_document(self, asset: Asset) -> PageRejected | int:
        """Document-level checks shared with full extraction; returns the page count when valid."""
        if not is_pdf_asset(asset):
            return _reject(RejectionReason.not_pdf, "Asset is not a PDF")
        page_count = await self.resolve_page_count(asset)
        if page_count < 1:
            return _reject(RejectionReason.page_count_unavailable, "PDF page count unavailable")
        if asset.pdf_unsupported_large or page_count > self.max_allowed_pages:
            return _reject(
                RejectionReason.unsupported_large,
                f"PDF exceeds the maximum supported page count ({page_count} pages, limit {self.max_allowed_pages})",
                page_count,
            )
        return page_count

    async def resolve_page(self, asset: Asset, page: int) -> PageOutcome:
        if int(page) < 1:
            return _reject(RejectionReason.invalid_page, "Page must be >= 1")
        checked = await self.check_document(asset)
        if isinstance(checked, PageRejected):
            return checked
        page_count = checked
        if page > page_count:
            return _reject(
                RejectionReason.page_exceeds_count,
                f"Requested page {page} exceeds PDF page count {page_count}",
                page_count,
            )

        key = storage_key_for(ArtifactKind.pdf_page, asset, page=page)
        if await self._artifact_exists(asset, page, key):
            url = await anyio.to_thread.run_sync(self._signed_url, key)
            metrics.record_pdf_page_ready()
            return PageReady(url=url, page=page, page_count=page_count)

        lock_key = page_render_lock_key(asset.id, asset.version_number, page)
        if not await self.locks.acquire_if_absent(lock_key, self.lock_ttl_seconds):
            metrics.record_pdf_page_in_flight()
            return PageProcessing(page=page, page_count=page_count, dispatched=False)

        try:
            await self.dispatch(asset, page)
        except Exception as exc:
            logger.exception("pdf_page_dispatch_failed", extra={"asset_id": str(asset.id), "page": page})
            await self._release_lock(lock_key)
            raise RenderDispatchError(f"Failed to dispatch render for page {page}") from exc
        metrics.record_pdf_page_dispatched()
        logger.info("pdf_page_dispatched", extra={"asset_id": str(asset.id), "page": page})
        return PageProcessing(page=page, page_count=page_count, dispatched=True)

    async def _artifact_exists(self, asset: Asset, page: int, key: str) -> bool:
        try:
            return bool(await anyio.to_thread.run_sync(self.storage.exists, key))
        except Exception as exc:
            # A flaky probe must not block rendering; fall through to dispatch.
            logger.warning(
                "pdf_page_probe_failed",
                extra={"asset_id": str(asset.id), "page": page, "error": str(exc)},
            )
            return False

    async def _release_lock(self, lock_key: str) -> None:
        try:
            await self.locks.release(lock_key)
        except Exception as exc:
            # The key still expires on its own after the TTL.
            logger.warning("pdf_page_lock_release_failed", extra={"lock_key": lock_key, "error": str(exc)})

    def _signed_url(self, key: str) -> str:
        return self.storage.signed_url(key, ttl_seconds=self.url_ttl_seconds)
