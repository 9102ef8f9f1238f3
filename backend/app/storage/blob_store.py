"""Blob half of the attachment store.

Blobs are addressed by opaque keys of the form ``<request_id>/<uuid><ext>``
so every object is scoped to exactly one change request.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path

from app.core.config import settings
from app.utils.logging import get_logger

logger = get_logger(__name__)


class BlobStoreError(Exception):
    """Raised by a backend when a blob operation fails."""


class BaseBlobStore(ABC):
    @abstractmethod
    async def put_blob(self, key: str, data: bytes, content_type: str | None = None) -> None: ...

    @abstractmethod
    async def get_url(self, key: str) -> str: ...

    @abstractmethod
    async def delete_blob(self, key: str) -> None: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...


class LocalBlobStore(BaseBlobStore):
    """Filesystem-backed store; file I/O runs in a worker thread."""

    def __init__(self, root: str | Path, public_base_url: str = "") -> None:
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise BlobStoreError(f"Key escapes blob root: {key}")
        return path

    async def put_blob(self, key: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".part")
            tmp.write_bytes(data)
            os.replace(tmp, path)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise BlobStoreError(f"Failed to store {key}: {exc}") from exc
        logger.debug("Stored blob %s (%d bytes)", key, len(data))

    async def get_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()

    async def delete_blob(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)


class S3BlobStore(BaseBlobStore):
    """S3 backend via boto3; calls are synchronous so they run in a thread."""

    def __init__(self, bucket: str, region: str = "us-east-1", url_expiry_seconds: int = 3600) -> None:
        self.bucket = bucket
        self.region = region
        self.url_expiry_seconds = url_expiry_seconds
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    async def _call(self, action: str, key: str, fn, **kwargs):
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"S3 {action} failed for {key}: {exc}") from exc

    async def put_blob(self, key: str, data: bytes, content_type: str | None = None) -> None:
        client = self._get_client()
        extra = {"ContentType": content_type} if content_type else {}
        await self._call("put", key, client.put_object, Bucket=self.bucket, Key=key, Body=data, **extra)

    async def get_url(self, key: str) -> str:
        client = self._get_client()
        return await self._call(
            "presign",
            key,
            client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.url_expiry_seconds,
        )

    async def delete_blob(self, key: str) -> None:
        client = self._get_client()
        await self._call("delete", key, client.delete_object, Bucket=self.bucket, Key=key)

    async def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        client = self._get_client()
        try:
            await asyncio.to_thread(client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise BlobStoreError(f"S3 head failed for {key}: {exc}") from exc
        return True


_blob_store: BaseBlobStore | None = None


def get_blob_store() -> BaseBlobStore:
    global _blob_store
    if _blob_store is None:
        if settings.blob_backend == "s3":
            _blob_store = S3BlobStore(settings.s3_bucket, settings.s3_region, settings.s3_url_expiry_seconds)
        else:
            _blob_store = LocalBlobStore(settings.blob_root, settings.blob_public_base_url)
    return _blob_store
