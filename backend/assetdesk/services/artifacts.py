from __future__ import annotations

import enum

from assetdesk.models.asset import Asset

PDF_PAGE_CONTENT_TYPE = "image/webp"


class ArtifactKind(str, enum.Enum):
    original = "original"
    pdf_page = "pdf_page"


def content_type_for(kind: ArtifactKind, asset: Asset) -> str:
    if kind == ArtifactKind.original:
        return (asset.mime_type or "").strip() or "application/octet-stream"
    if kind == ArtifactKind.pdf_page:
        return PDF_PAGE_CONTENT_TYPE
    raise ValueError(f"Unknown artifact kind: {kind!r}")


def _version_prefix(asset: Asset) -> str:
    version = max(1, int(asset.version_number or 1))
    return f"tenants/{asset.tenant_id}/assets/{asset.id}/v{version}"


def storage_key_for(kind: ArtifactKind, asset: Asset, *, page: int | None = None) -> str:
    """Object key for an artifact of `asset`; page keys are scoped to the asset version."""
    if kind == ArtifactKind.original:
        key = (asset.storage_root_path or "").strip().lstrip("/")
        if not key:
            raise ValueError("Asset has no original storage path")
        return key
    if kind == ArtifactKind.pdf_page:
        if page is None or int(page) < 1:
            raise ValueError("pdf_page artifacts require a page >= 1")
        return f"{_version_prefix(asset)}/pdf_pages/page-{int(page)}.webp"
    raise ValueError(f"Unknown artifact kind: {kind!r}")


def is_pdf_asset(asset: Asset) -> bool:
    mime = (asset.mime_type or "").strip().lower()
    if "pdf" in mime:
        return True
    if mime and mime != "application/octet-stream":
        return False
    return (asset.original_filename or "").strip().lower().endswith(".pdf")
