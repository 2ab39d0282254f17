import os
from collections.abc import Callable, Generator
from io import BytesIO

import pytest

# Tests never talk to Sentry or Redis, and the default engine points at sqlite.
os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pypdfium2 as pdfium  # noqa: E402

from assetdesk.core import metrics  # noqa: E402
from assetdesk.services import dispatch_lock  # noqa: E402


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    metrics.reset()
    dispatch_lock._local_store.clear()
    yield
    metrics.reset()
    dispatch_lock._local_store.clear()


def _make_pdf_bytes(pages: int) -> bytes:
    pdf = pdfium.PdfDocument.new()
    try:
        for _ in range(pages):
            pdf.new_page(612, 792)
        buf = BytesIO()
        pdf.save(buf)
        return buf.getvalue()
    finally:
        pdf.close()


@pytest.fixture
def make_pdf() -> Callable[[int], bytes]:
    return _make_pdf_bytes
