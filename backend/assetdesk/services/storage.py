from __future__ import annotations

import hashlib
import hmac
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import quote
from uuid import uuid4

from assetdesk.core.config import settings

logger = logging.getLogger(__name__)

MIN_URL_TTL_SECONDS = 30
SIGNED_OBJECT_ROUTE = "/api/v1/media/objects"


class StorageError(RuntimeError):
    """Raised when the object store cannot complete a read or write."""


class ObjectNotFound(StorageError):
    pass


class ObjectStorage(Protocol):
    def exists(self, key: str) -> bool: ...

    def put_bytes(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None) -> None: ...

    def read_bytes(self, key: str) -> bytes: ...

    def download_to(self, key: str, destination: Path) -> Path: ...

    def signed_url(self, key: str, *, ttl_seconds: int) -> str: ...


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _normalize_key(key: str) -> str:
    cleaned = str(key or "").strip().lstrip("/")
    if not cleaned:
        raise StorageError("Empty storage key")
    return cleaned


def _bounded_ttl(ttl_seconds: int | None) -> int:
    ttl = int(ttl_seconds or settings.pdf_page_url_ttl_seconds or 600)
    return max(MIN_URL_TTL_SECONDS, ttl)


def sign_object_key(key: str, *, exp: int) -> str:
    base = f"{_normalize_key(key)}:{int(exp)}"
    secret = str(settings.secret_key or "").encode("utf-8")
    return hmac.new(secret, base.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_object_signature(key: str, *, exp: int | str, sig: str) -> bool:
    try:
        exp_ts = int(exp)
    except (TypeError, ValueError):
        return False
    if exp_ts < _now_ts():
        return False
    try:
        expected = sign_object_key(key, exp=exp_ts)
    except StorageError:
        return False
    return hmac.compare_digest(expected, str(sig or ""))


class LocalObjectStorage:
    """Filesystem-backed object store; URLs are HMAC-signed API paths."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or settings.storage_root).resolve()

    def path_for(self, key: str) -> Path:
        path = (self.root / _normalize_key(key)).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise StorageError("Storage key escapes the storage root")
        return path

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def put_bytes(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        temp.write_bytes(data)
        temp.replace(path)

    def read_bytes(self, key: str) -> bytes:
        path = self.path_for(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        return path.read_bytes()

    def download_to(self, key: str, destination: Path) -> Path:
        path = self.path_for(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        shutil.copyfile(path, destination)
        return destination

    def signed_url(self, key: str, *, ttl_seconds: int) -> str:
        normalized = _normalize_key(key)
        exp = _now_ts() + _bounded_ttl(ttl_seconds)
        sig = sign_object_key(normalized, exp=exp)
        return f"{SIGNED_OBJECT_ROUTE}/{quote(normalized)}?exp={exp}&sig={sig}"


class S3ObjectStorage:
    """S3 (or S3-compatible) object store using presigned GET URLs."""

    def __init__(self, *, bucket: str, client=None) -> None:
        if not bucket:
            raise StorageError("S3 bucket is not configured")
        self.bucket = bucket
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import boto3

            kwargs: dict[str, str] = {"region_name": settings.s3_region}
            if settings.s3_endpoint_url:
                kwargs["endpoint_url"] = settings.s3_endpoint_url
            if settings.s3_access_key and settings.s3_secret_key:
                kwargs["aws_access_key_id"] = settings.s3_access_key
                kwargs["aws_secret_access_key"] = settings.s3_secret_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self.client.head_object(Bucket=self.bucket, Key=_normalize_key(key))
            return True
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise StorageError(f"head_object failed for {key}: {code}") from exc

    def put_bytes(self, key: str, data: bytes, *, content_type: str, metadata: dict[str, str] | None = None) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=_normalize_key(key),
            Body=data,
            ContentType=content_type,
            Metadata=dict(metadata or {}),
        )

    def read_bytes(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=_normalize_key(key))
        return obj["Body"].read()

    def download_to(self, key: str, destination: Path) -> Path:
        self.client.download_file(self.bucket, _normalize_key(key), str(destination))
        return destination

    def signed_url(self, key: str, *, ttl_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": _normalize_key(key)},
            ExpiresIn=_bounded_ttl(ttl_seconds),
        )


_s3_storage: S3ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _s3_storage
    backend = (settings.storage_backend or "local").strip().lower()
    if backend == "s3":
        if _s3_storage is None or _s3_storage.bucket != settings.s3_bucket:
            _s3_storage = S3ObjectStorage(bucket=str(settings.s3_bucket or ""))
        return _s3_storage
    if backend != "local":
        logger.warning("unknown_storage_backend", extra={"storage_backend": backend})
    return LocalObjectStorage(settings.storage_root)
