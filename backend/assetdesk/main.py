import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from assetdesk.api.v1 import api_router
from assetdesk.core.config import settings
from assetdesk.core.logging_config import configure_logging
from assetdesk.core.redis_client import close_redis
from assetdesk.core.sentry import init_sentry
from assetdesk.core.startup_checks import validate_production_settings
from assetdesk.middleware import RequestLoggingMiddleware
from assetdesk.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_production_settings()
    init_sentry()
    tags_metadata = [
        {"name": "pdf-pages", "description": "On-demand PDF page rendering and full extraction"},
        {"name": "media", "description": "Signed delivery of stored objects"},
        {"name": "health", "description": "Liveness and readiness probes"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(payload.model_dump()),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", extra={"path": request.url.path, "method": request.method})
        payload = ErrorResponse(detail="Internal server error", code="internal_error")
        return JSONResponse(status_code=500, content=payload.model_dump())

    return app


app = get_application()
