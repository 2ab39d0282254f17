import mimetypes

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from assetdesk.core.dependencies import get_object_storage
from assetdesk.services.storage import LocalObjectStorage, ObjectNotFound, ObjectStorage, StorageError, verify_object_signature

router = APIRouter(prefix="/media", tags=["media"])


def _media_type_for(key: str) -> str:
    if key.lower().endswith(".webp"):
        return "image/webp"
    guessed, _ = mimetypes.guess_type(key)
    return guessed or "application/octet-stream"


@router.get("/objects/{key:path}")
async def get_signed_object(
    key: str,
    exp: int = Query(...),
    sig: str = Query(...),
    storage: ObjectStorage = Depends(get_object_storage),
) -> Response:
    if not verify_object_signature(key, exp=exp, sig=sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    try:
        data = await anyio.to_thread.run_sync(storage.read_bytes, key)
    except (ObjectNotFound, StorageError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    return Response(
        content=data,
        media_type=_media_type_for(key),
        headers={"Cache-Control": "private, max-age=60"},
    )
