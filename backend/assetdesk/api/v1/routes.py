from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from assetdesk.api.v1 import media, pdf_pages
from assetdesk.core.metrics import snapshot as metrics_snapshot
from assetdesk.core.redis_client import await_if_needed, get_redis
from assetdesk.db.session import get_session

api_router = APIRouter()

api_router.include_router(pdf_pages.router)
api_router.include_router(media.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    redis = get_redis()
    if redis is not None:
        try:
            await await_if_needed(redis.ping())
        except Exception:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Redis unavailable")
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
