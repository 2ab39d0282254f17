from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import pypdfium2 as pdfium
from PIL import Image

from assetdesk.core.config import settings
from assetdesk.models.asset import Asset
from assetdesk.services.artifacts import ArtifactKind, PDF_PAGE_CONTENT_TYPE, is_pdf_asset, storage_key_for
from assetdesk.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

PDF_POINTS_PER_INCH = 72


class PdfRenderError(RuntimeError):
    pass


@dataclass(slots=True)
class RenderedPage:
    data: bytes
    width: int
    height: int
    mime_type: str = PDF_PAGE_CONTENT_TYPE

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def _check_size(path: Path, max_size_bytes: int | None) -> None:
    if not path.is_file():
        raise PdfRenderError("PDF file does not exist")
    limit = int(max_size_bytes if max_size_bytes is not None else settings.pdf_max_size_bytes)
    size = path.stat().st_size
    if size == 0:
        raise PdfRenderError("PDF file is empty")
    if size > limit:
        raise PdfRenderError(f"PDF exceeds maximum allowed size ({limit} bytes)")


def detect_page_count(path: str | Path, *, max_size_bytes: int | None = None) -> int:
    local = Path(path)
    _check_size(local, max_size_bytes)
    try:
        pdf = pdfium.PdfDocument(str(local))
    except pdfium.PdfiumError as exc:
        raise PdfRenderError(f"Invalid PDF: {exc}") from exc
    try:
        count = len(pdf)
    finally:
        pdf.close()
    if count < 1:
        raise PdfRenderError("Unable to determine PDF page count")
    return count


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    if image.mode == "RGB":
        return image
    if image.mode in ("RGBA", "LA") or "transparency" in image.info:
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return image.convert("RGB")


def render_page_to_webp(
    path: str | Path,
    page: int,
    *,
    dpi: int | None = None,
    max_size: int | None = None,
    quality: int | None = None,
) -> RenderedPage:
    """Render one 1-based page to WebP, fitted inside a max_size square."""
    if int(page) < 1:
        raise PdfRenderError("PDF page must be >= 1")
    local = Path(path)
    _check_size(local, None)
    dpi = int(dpi or settings.pdf_viewer_dpi)
    max_size = int(max_size or settings.pdf_viewer_max_size)
    quality = int(quality or settings.pdf_viewer_quality)

    try:
        pdf = pdfium.PdfDocument(str(local))
    except pdfium.PdfiumError as exc:
        raise PdfRenderError(f"Invalid PDF: {exc}") from exc
    try:
        if int(page) > len(pdf):
            raise PdfRenderError(f"PDF has {len(pdf)} pages; page {page} requested")
        pdf_page = pdf[int(page) - 1]
        try:
            bitmap = pdf_page.render(scale=dpi / PDF_POINTS_PER_INCH)
            image = _flatten_to_rgb(bitmap.to_pil())
        finally:
            pdf_page.close()
    finally:
        pdf.close()

    image.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    buf = BytesIO()
    image.save(buf, format="WEBP", quality=quality)
    data = buf.getvalue()
    if not data:
        raise PdfRenderError("Rendered PDF page image is empty")
    width, height = image.size
    return RenderedPage(data=data, width=int(width), height=int(height))


def download_source_to_temp(storage: ObjectStorage, asset: Asset) -> Path:
    key = storage_key_for(ArtifactKind.original, asset)
    fd, raw_path = tempfile.mkstemp(prefix="pdf_src_", suffix=".pdf")
    os.close(fd)
    temp_path = Path(raw_path)
    try:
        storage.download_to(key, temp_path)
        if temp_path.stat().st_size == 0:
            raise PdfRenderError("Downloaded PDF is empty or missing")
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    return temp_path


class StoragePageCounter:
    """Counts pages of an asset's original, preferring the cached count on the row.

    Returns 0 when the asset is not a PDF or detection fails.
    """

    def __init__(self, storage: ObjectStorage, *, max_size_bytes: int | None = None) -> None:
        self.storage = storage
        self.max_size_bytes = max_size_bytes

    def __call__(self, asset: Asset, *, force_detect: bool = False) -> int:
        if not is_pdf_asset(asset):
            return 0
        if not force_detect:
            stored = int(asset.pdf_page_count or 0)
            if stored > 0:
                return stored
        temp_path: Path | None = None
        try:
            temp_path = download_source_to_temp(self.storage, asset)
            return detect_page_count(temp_path, max_size_bytes=self.max_size_bytes)
        except Exception as exc:
            logger.warning("pdf_page_count_detection_failed", extra={"asset_id": str(asset.id), "error": str(exc)})
            return 0
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
