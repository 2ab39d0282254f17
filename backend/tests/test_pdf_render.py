from io import BytesIO
from pathlib import Path
from uuid import uuid4

import pytest
from PIL import Image

from assetdesk.models.asset import Asset
from assetdesk.services import pdf_render
from assetdesk.services.storage import LocalObjectStorage


def _write(tmp_path: Path, name: str, data: bytes) -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


def _asset(storage_root_path: str, **overrides) -> Asset:
    values = dict(
        id=uuid4(),
        tenant_id=uuid4(),
        brand_id=uuid4(),
        original_filename="deck.pdf",
        mime_type="application/pdf",
        storage_root_path=storage_root_path,
        version_number=1,
        pdf_page_count=None,
        pdf_unsupported_large=False,
    )
    values.update(overrides)
    return Asset(**values)


def test_detect_page_count_reads_generated_pdf(tmp_path: Path, make_pdf) -> None:
    path = _write(tmp_path, "three.pdf", make_pdf(3))

    assert pdf_render.detect_page_count(path) == 3


def test_detect_page_count_rejects_garbage_and_empty_files(tmp_path: Path) -> None:
    with pytest.raises(pdf_render.PdfRenderError):
        pdf_render.detect_page_count(_write(tmp_path, "bad.pdf", b"not a pdf at all"))
    with pytest.raises(pdf_render.PdfRenderError):
        pdf_render.detect_page_count(_write(tmp_path, "empty.pdf", b""))


def test_detect_page_count_enforces_size_limit(tmp_path: Path, make_pdf) -> None:
    path = _write(tmp_path, "one.pdf", make_pdf(1))

    with pytest.raises(pdf_render.PdfRenderError):
        pdf_render.detect_page_count(path, max_size_bytes=10)


def test_render_page_to_webp_fits_inside_max_size(tmp_path: Path, make_pdf) -> None:
    path = _write(tmp_path, "two.pdf", make_pdf(2))

    rendered = pdf_render.render_page_to_webp(path, 2, dpi=72, max_size=200, quality=80)

    assert rendered.mime_type == "image/webp"
    assert max(rendered.width, rendered.height) <= 200
    with Image.open(BytesIO(rendered.data)) as image:
        assert image.format == "WEBP"
        assert image.size == (rendered.width, rendered.height)


def test_render_page_beyond_document_fails(tmp_path: Path, make_pdf) -> None:
    path = _write(tmp_path, "one.pdf", make_pdf(1))

    with pytest.raises(pdf_render.PdfRenderError):
        pdf_render.render_page_to_webp(path, 2)


def test_storage_page_counter_detects_from_original(tmp_path: Path, make_pdf) -> None:
    store = LocalObjectStorage(tmp_path)
    store.put_bytes("originals/deck.pdf", make_pdf(4), content_type="application/pdf")
    counter = pdf_render.StoragePageCounter(store)

    assert counter(_asset("originals/deck.pdf")) == 4
    assert counter(_asset("originals/deck.pdf", pdf_page_count=9)) == 9
    assert counter(_asset("originals/deck.pdf", pdf_page_count=9), force_detect=True) == 4


def test_storage_page_counter_returns_zero_when_detection_fails(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    counter = pdf_render.StoragePageCounter(LocalObjectStorage(tmp_path))

    with caplog.at_level("WARNING"):
        assert counter(_asset("originals/missing.pdf")) == 0
    assert any(record.getMessage() == "pdf_page_count_detection_failed" for record in caplog.records)
    assert counter(_asset("originals/logo.png", mime_type="image/png", original_filename="logo.png")) == 0
