from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from src.asspp.domain.exceptions import ArtifactNotFoundError, ArtifactTooLargeError, StorageError
from src.asspp.domain.keys import validate_key
from src.asspp.domain.models.artifact import ArtifactInfo
from src.asspp.domain.repositories import ObjectStoreRepository

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_not_found(exc: ClientError) -> bool:
    return str(exc.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES


class S3ObjectStore(ObjectStoreRepository):
    """Objects in an S3-compatible bucket, keyed by artifact key verbatim.

    boto3 is blocking; every call runs in a worker thread.
    """

    def __init__(self, client: Any, bucket: str, *, max_object_bytes: int | None = None) -> None:
        self._client = client
        self._bucket = bucket
        self._max_object_bytes = max_object_bytes

    async def _call(self, operation: str, key: str | None, **kwargs: Any) -> Any:
        method = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(method, Bucket=self._bucket, **kwargs)
        except ClientError as exc:
            if key is not None and _is_not_found(exc):
                raise ArtifactNotFoundError(key) from None
            raise StorageError(f"{operation} failed for '{key}': {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"{operation} failed for '{key}': {exc}") from exc

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> ArtifactInfo:
        validate_key(key)
        if self._max_object_bytes is not None and len(data) > self._max_object_bytes:
            raise ArtifactTooLargeError(len(data), self._max_object_bytes)
        content_type = content_type or "application/octet-stream"
        await self._call("put_object", key, Key=key, Body=data, ContentType=content_type)
        return ArtifactInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            sha256=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        validate_key(key)
        response = await self._call("get_object", key, Key=key)
        body = response["Body"]
        try:
            return await asyncio.to_thread(body.read)
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read body of '{key}': {exc}") from exc
        finally:
            body.close()

    async def delete(self, key: str) -> None:
        validate_key(key)
        # DeleteObject succeeds for missing keys; HEAD first to report NotFound.
        await self._call("head_object", key, Key=key)
        await self._call("delete_object", key, Key=key)

    async def exists(self, key: str) -> bool:
        try:
            await self.stat(key)
        except ArtifactNotFoundError:
            return False
        return True

    async def stat(self, key: str) -> ArtifactInfo:
        validate_key(key)
        head = await self._call("head_object", key, Key=key)
        return ArtifactInfo(
            key=key,
            size=int(head.get("ContentLength", 0)),
            content_type=head.get("ContentType") or "application/octet-stream",
            created_at=head.get("LastModified"),
        )

    async def stream(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        validate_key(key)
        response = await self._call("get_object", key, Key=key)
        body = response["Body"]
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(body.read, chunk_size)
                except BotoCoreError as exc:
                    raise StorageError(f"Failed to read body of '{key}': {exc}") from exc
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call("list_objects_v2", None, **kwargs)
            for item in page.get("Contents", []):
                yield item["Key"]
            if not page.get("IsTruncated"):
                return
            token = page.get("NextContinuationToken")
