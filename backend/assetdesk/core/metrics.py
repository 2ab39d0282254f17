from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_pdf_page_ready() -> None:
    _inc("pdf_page_ready")


def record_pdf_page_dispatched() -> None:
    _inc("pdf_page_dispatched")


def record_pdf_page_in_flight() -> None:
    _inc("pdf_page_in_flight")


def record_pdf_page_rejected(reason: str) -> None:
    _inc(f"pdf_page_rejected:{reason}")


def record_render_completed() -> None:
    _inc("render_jobs_completed")


def record_render_failed() -> None:
    _inc("render_jobs_failed")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
