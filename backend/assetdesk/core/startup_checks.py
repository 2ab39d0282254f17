from __future__ import annotations

import logging

from assetdesk.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_core_settings(problems: list[str]) -> None:
    secret = (settings.secret_key or "").strip()
    _append_if(
        problems,
        condition=secret in {"", "dev-secret-key"} or len(secret) < 32,
        message="SECRET_KEY must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=not (settings.redis_url or "").strip(),
        message="REDIS_URL must be configured in production (render queue and dispatch locks).",
    )


def _validate_storage_settings(problems: list[str]) -> None:
    backend = (settings.storage_backend or "").strip().lower()
    _append_if(
        problems,
        condition=backend not in {"local", "s3"},
        message="STORAGE_BACKEND must be one of: local | s3.",
    )
    _append_if(
        problems,
        condition=backend == "s3" and not (settings.s3_bucket or "").strip(),
        message="S3_BUCKET must be set when STORAGE_BACKEND=s3.",
    )


def _validate_pdf_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=int(settings.pdf_max_allowed_pages) < 1,
        message="PDF_MAX_ALLOWED_PAGES must be >= 1.",
    )
    _append_if(
        problems,
        condition=int(settings.pdf_render_lock_ttl_seconds) < 1,
        message="PDF_RENDER_LOCK_TTL_SECONDS must be >= 1.",
    )


def validate_production_settings() -> None:
    """
    Fail fast on insecure or incomplete configuration when running in production.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_core_settings(problems)
    _validate_storage_settings(problems)
    _validate_pdf_settings(problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
