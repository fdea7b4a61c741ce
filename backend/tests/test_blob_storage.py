import io
import json
from typing import Any

import pytest
from botocore.exceptions import ClientError, ConnectTimeoutError, EndpointConnectionError

from ebook_media.services import blob_storage
from ebook_media.services.blob_storage import (
    REASON_ACCESS_DENIED,
    REASON_DELETE_ERROR,
    REASON_NOT_FOUND,
    REASON_TIMEOUT,
    BlobStorageError,
    BlobStorageNotConfiguredError,
    S3BlobStorage,
    classify_storage_error,
)


def _client_error(code: str, status: int, operation: str = "DeleteObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


class _FakeS3Client:
    def __init__(self, keys: list[str] | None = None, *, page_size: int = 2) -> None:
        self.keys = sorted(keys or [])
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.objects: dict[str, bytes] = {}
        self.fail: dict[str, ClientError] = {}

    def _record(self, name: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((name, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def head_bucket(self, **kwargs: Any) -> dict:
        self._record("head_bucket", kwargs)
        return {}

    def list_objects_v2(self, **kwargs: Any) -> dict:
        self._record("list_objects_v2", kwargs)
        start = int(kwargs.get("ContinuationToken") or 0)
        matching = [key for key in self.keys if key.startswith(kwargs["Prefix"])]
        chunk = matching[start : start + self.page_size]
        page: dict[str, Any] = {"Contents": [{"Key": key} for key in chunk]} if chunk else {}
        if start + self.page_size < len(matching):
            page.update({"IsTruncated": True, "NextContinuationToken": str(start + self.page_size)})
        else:
            page["IsTruncated"] = False
        return page

    def get_object(self, **kwargs: Any) -> dict:
        self._record("get_object", kwargs)
        if kwargs["Key"] not in self.objects:
            raise _client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(self.objects[kwargs["Key"]])}

    def put_object(self, **kwargs: Any) -> dict:
        self._record("put_object", kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {}

    def delete_object(self, **kwargs: Any) -> dict:
        self._record("delete_object", kwargs)
        self.objects.pop(kwargs["Key"], None)
        return {}

    def head_object(self, **kwargs: Any) -> dict:
        self._record("head_object", kwargs)
        if kwargs["Key"] not in self.objects:
            raise _client_error("404", 404, "HeadObject")
        return {}


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_client_error("AccessDenied", 403), REASON_ACCESS_DENIED),
        (_client_error("SomethingElse", 403), REASON_ACCESS_DENIED),
        (_client_error("NoSuchKey", 404), REASON_NOT_FOUND),
        (_client_error("RequestTimeout", 400), REASON_TIMEOUT),
        (_client_error("InternalError", 500), REASON_DELETE_ERROR),
        (ConnectTimeoutError(endpoint_url="https://s3.example.com"), REASON_TIMEOUT),
        (TimeoutError("timed out"), REASON_TIMEOUT),
        (RuntimeError("Access Denied by policy"), REASON_ACCESS_DENIED),
    ],
)
def test_classify_storage_error(exc: BaseException, expected: str) -> None:
    assert classify_storage_error(exc) == expected


def test_classify_storage_error_uses_fallback_and_keeps_existing_reason() -> None:
    assert classify_storage_error(RuntimeError("boom"), fallback="s3_list_error") == "s3_list_error"
    assert classify_storage_error(BlobStorageError("x", reason="custom")) == "custom"


def test_storage_requires_a_bucket() -> None:
    with pytest.raises(BlobStorageNotConfiguredError):
        S3BlobStorage("  ", client=_FakeS3Client())


@pytest.mark.anyio("asyncio")
async def test_iter_key_pages_follows_continuation_tokens() -> None:
    client = _FakeS3Client(["p/a", "p/b", "p/c", "p/d", "p/e", "q/z"])
    storage = S3BlobStorage("media", client=client)

    pages = [page async for page in storage.iter_key_pages("p/")]

    assert pages == [["p/a", "p/b"], ["p/c", "p/d"], ["p/e"]]
    list_calls = [kwargs for name, kwargs in client.calls if name == "list_objects_v2"]
    assert [call.get("ContinuationToken") for call in list_calls] == [None, "2", "4"]
    assert all(call["Bucket"] == "media" for call in list_calls)


@pytest.mark.anyio("asyncio")
async def test_json_round_trip_and_exists() -> None:
    client = _FakeS3Client()
    storage = S3BlobStorage("versions", client=client)

    uri = await storage.put_json("v/1.json", {"type": "doc", "title": "华商道"})

    assert uri == "s3://versions/v/1.json"
    assert json.loads(client.objects["v/1.json"]) == {"type": "doc", "title": "华商道"}
    assert await storage.get_json("v/1.json") == {"type": "doc", "title": "华商道"}
    assert await storage.exists("v/1.json") is True
    await storage.delete("v/1.json")
    assert await storage.exists("v/1.json") is False


@pytest.mark.anyio("asyncio")
async def test_get_json_reports_missing_and_invalid_objects() -> None:
    client = _FakeS3Client()
    client.objects["bad.json"] = b"not json"
    storage = S3BlobStorage("versions", client=client)

    with pytest.raises(BlobStorageError) as missing:
        await storage.get_json("nope.json")
    assert missing.value.reason == REASON_NOT_FOUND
    assert missing.value.key == "nope.json"

    with pytest.raises(BlobStorageError) as invalid:
        await storage.get_json("bad.json")
    assert invalid.value.reason == "invalid_json"


@pytest.mark.anyio("asyncio")
async def test_delete_and_ping_failures_are_classified() -> None:
    client = _FakeS3Client()
    client.fail["delete_object"] = _client_error("AccessDenied", 403)
    client.fail["head_bucket"] = EndpointConnectionError(endpoint_url="https://s3.example.com")
    storage = S3BlobStorage("media", client=client)

    with pytest.raises(BlobStorageError) as denied:
        await storage.delete("k.png")
    assert denied.value.reason == REASON_ACCESS_DENIED

    with pytest.raises(BlobStorageError) as unreachable:
        await storage.ping()
    assert unreachable.value.reason == "s3_unreachable"


def test_storage_accessors_cache_one_client_per_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(blob_storage, "_storages", {})
    monkeypatch.setattr(blob_storage, "_build_client", lambda region, endpoint_url: _FakeS3Client())
    monkeypatch.setattr(blob_storage.settings, "media_bucket", "media-bucket")
    monkeypatch.setattr(blob_storage.settings, "ebook_versions_bucket", "versions-bucket")

    media = blob_storage.get_media_storage()

    assert media is blob_storage.get_media_storage()
    assert media.bucket == "media-bucket"
    assert blob_storage.get_versions_storage().bucket == "versions-bucket"
