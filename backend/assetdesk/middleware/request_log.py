import logging
import re
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from assetdesk.core.logging_config import request_id_ctx_var

logger = logging.getLogger("assetdesk.request")

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")
_QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready"})


def _incoming_request_id(request: Request) -> str:
    candidate = (request.headers.get("X-Request-ID") or "").strip()
    if candidate and _REQUEST_ID_RE.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs one line when it finishes. Query strings are never logged."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request)
        token = request_id_ctx_var.set(request_id)
        request.state.request_id = request_id
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            path = request.url.path
            if path not in _QUIET_PATHS or status_code >= 500:
                level = logging.WARNING if status_code >= 500 else logging.INFO
                logger.log(
                    level,
                    "request",
                    extra={
                        "path": path,
                        "method": request.method,
                        "status_code": status_code,
                        "duration_ms": int((time.perf_counter() - started) * 1000),
                    },
                )
            request_id_ctx_var.reset(token)
