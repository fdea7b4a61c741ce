from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import anyio
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from ebook_media.core.config import settings

logger = logging.getLogger(__name__)

REASON_ACCESS_DENIED = "s3_access_denied"
REASON_TIMEOUT = "s3_timeout"
REASON_NOT_FOUND = "s3_not_found"
REASON_DELETE_ERROR = "s3_delete_error"

_ACCESS_DENIED_CODES = {"AccessDenied", "AllAccessDisabled", "Forbidden", "403"}
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "NoSuchBucket", "404"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException", "SlowDown"}


class BlobStorageNotConfiguredError(RuntimeError):
    pass


class BlobStorageError(RuntimeError):
    def __init__(self, message: str, *, reason: str, key: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.key = key


class MediaStorage(Protocol):
    bucket: str

    async def ping(self) -> None: ...

    def iter_key_pages(self, prefix: str) -> AsyncIterator[list[str]]: ...

    async def get_json(self, key: str) -> Any: ...

    async def put_json(self, key: str, payload: Any) -> str: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


def classify_storage_error(exc: BaseException, *, fallback: str = REASON_DELETE_ERROR) -> str:
    if isinstance(exc, BlobStorageError):
        return exc.reason
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {}) or {}
        code = str(error.get("Code") or "")
        status = (exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode")
        if code in _ACCESS_DENIED_CODES or status == 403:
            return REASON_ACCESS_DENIED
        if code in _NOT_FOUND_CODES or status == 404:
            return REASON_NOT_FOUND
        if code in _TIMEOUT_CODES or status in (408, 504):
            return REASON_TIMEOUT
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, TimeoutError)):
        return REASON_TIMEOUT
    message = str(exc).lower().replace(" ", "")
    if "accessdenied" in message:
        return REASON_ACCESS_DENIED
    if "timeout" in message or "timedout" in message:
        return REASON_TIMEOUT
    if "notfound" in message or "nosuchkey" in message:
        return REASON_NOT_FOUND
    return fallback


def _build_client(region: str, endpoint_url: str | None) -> Any:
    config = BotoConfig(
        connect_timeout=settings.s3_connect_timeout_seconds,
        read_timeout=settings.s3_read_timeout_seconds,
        retries={"max_attempts": max(1, int(settings.s3_max_attempts)), "mode": "standard"},
    )
    return boto3.client("s3", region_name=region, endpoint_url=endpoint_url or None, config=config)


class S3BlobStorage:
    """Async facade over a boto3 S3 client; blocking calls run in a worker thread."""

    def __init__(self, bucket: str, *, client: Any | None = None, region: str | None = None) -> None:
        if not (bucket or "").strip():
            raise BlobStorageNotConfiguredError("S3 bucket is not configured")
        self.bucket = bucket
        self._client = client or _build_client(region or settings.aws_region, settings.s3_endpoint_url)

    async def _call(self, operation: str, key: str | None, fallback: str, **kwargs: Any) -> Any:
        method = getattr(self._client, operation)
        try:
            return await anyio.to_thread.run_sync(lambda: method(Bucket=self.bucket, **kwargs))
        except (ClientError, BotoCoreError) as exc:
            raise BlobStorageError(str(exc), reason=classify_storage_error(exc, fallback=fallback), key=key) from exc

    async def ping(self) -> None:
        await self._call("head_bucket", None, "s3_unreachable")

    async def iter_key_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call("list_objects_v2", None, "s3_list_error", **kwargs)
            yield [str(obj["Key"]) for obj in page.get("Contents", []) or [] if obj.get("Key")]
            token = page.get("NextContinuationToken")
            if not (page.get("IsTruncated") and token):
                break

    async def get_json(self, key: str) -> Any:
        obj = await self._call("get_object", key, "s3_get_error", Key=key)
        body = obj["Body"]
        try:
            raw = await anyio.to_thread.run_sync(body.read)
        finally:
            body.close()
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise BlobStorageError(f"Object {key} is not valid JSON", reason="invalid_json", key=key) from exc

    async def put_json(self, key: str, payload: Any) -> str:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        await self._call("put_object", key, "s3_put_error", Key=key, Body=body, ContentType="application/json")
        return f"s3://{self.bucket}/{key}"

    async def delete(self, key: str) -> None:
        await self._call("delete_object", key, REASON_DELETE_ERROR, Key=key)

    async def exists(self, key: str) -> bool:
        try:
            await self._call("head_object", key, "s3_head_error", Key=key)
        except BlobStorageError as exc:
            if exc.reason == REASON_NOT_FOUND:
                return False
            raise
        return True


_storages: dict[str, S3BlobStorage] = {}


def _storage_for(bucket: str) -> S3BlobStorage:
    storage = _storages.get(bucket)
    if storage is None:
        storage = S3BlobStorage(bucket)
        _storages[bucket] = storage
        logger.info("blob_storage_client_created", extra={"bucket": bucket, "region": settings.aws_region})
    return storage


def get_media_storage() -> MediaStorage:
    return _storage_for(settings.media_bucket)


def get_versions_storage() -> MediaStorage:
    return _storage_for(settings.ebook_versions_bucket)
