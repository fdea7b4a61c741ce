import asyncio
import uuid
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ebook_media.db.session import get_session
from ebook_media.main import app
from ebook_media.models import Base, Ebook, EbookVersion, EbookVersionKind
from ebook_media.services.blob_storage import BlobStorageError, get_media_storage, get_versions_storage

from media_testing import PREFIX, InMemoryBlobStorage, doc, image_node, media_url

BASE = "/api/v1/ebook/admin/media"


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    media = InMemoryBlobStorage("test-media")
    versions = InMemoryBlobStorage("test-ebook-versions")
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_media_storage] = lambda: media
    app.dependency_overrides[get_versions_storage] = lambda: versions
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "media": media, "versions": versions}
    client.close()
    app.dependency_overrides.clear()


def test_health_and_request_id_header(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})

    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
    assert res.headers["X-Request-ID"] == "req-123"


def test_enqueue_list_inspect_and_gc_flow(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    media: InMemoryBlobStorage = test_app["media"]  # type: ignore[assignment]
    key = f"{PREFIX}a.png"
    media.objects[key] = b"binary"

    res = client.post(f"{BASE}/deletions", json={"media_key": media_url("a.png")})
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "enqueued"
    assert res.json()["media_key"] == key

    pending = client.get(f"{BASE}/pending", params={"limit": 5})
    assert pending.status_code == 200
    assert [item["media_key"] for item in pending.json()["items"]] == [key]
    assert pending.json()["limit"] == 5

    inspect = client.get(f"{BASE}/inspect", params={"key": key})
    assert inspect.status_code == 200
    assert inspect.json()["pending"]["attempts"] == 0
    assert inspect.json()["usage"] is None

    gc = client.post(f"{BASE}/gc")
    assert gc.status_code == 200
    assert gc.json()["checked"] == 0
    assert key in media.objects


def test_enqueue_outside_prefix_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post(f"{BASE}/deletions", json={"media_key": "ebooks/another-book/a.png"})

    assert res.status_code == 400
    assert res.json()["detail"] == "Media key is outside the managed prefix"
    assert res.json()["request_id"]


def test_empty_media_key_is_a_validation_error(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post(f"{BASE}/deletions", json={"media_key": ""})

    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"


def test_autosave_and_version_hooks_protect_keys(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    version_id = str(uuid.uuid4())

    autosave = client.put(f"{BASE}/autosave", json={"content": doc(image_node("draft.png"))})
    assert autosave.status_code == 200
    assert autosave.json() == {"keys_in_draft": 1, "released": 0}

    created = client.post(
        f"{BASE}/versions",
        json={"version_id": version_id, "kind": "published", "content": doc(image_node("pub.png"))},
    )
    assert created.status_code == 201
    assert created.json()["media_keys"] == 1

    retained = client.post(f"{BASE}/deletions", json={"media_key": f"{PREFIX}pub.png"})
    assert retained.json()["status"] == "retained"
    assert retained.json()["usage"]["published_refs"] == 1

    removed = client.delete(f"{BASE}/versions/{version_id}", params={"kind": "published"})
    assert removed.status_code == 200
    enqueued = client.post(f"{BASE}/deletions", json={"media_key": f"{PREFIX}pub.png"})
    assert enqueued.json()["status"] == "enqueued"


def test_version_removal_releases_the_recorded_counter(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    version_id = str(uuid.uuid4())

    client.post(
        f"{BASE}/versions",
        json={"version_id": version_id, "kind": "manual", "content": doc(image_node("m.png"))},
    )
    promoted = client.post(
        f"{BASE}/versions",
        json={"version_id": version_id, "kind": "published", "content": doc(image_node("m.png"))},
    )
    assert promoted.status_code == 201

    removed = client.delete(f"{BASE}/versions/{version_id}")
    assert removed.status_code == 200
    assert removed.json() == {"version_id": version_id, "kind": "published", "media_keys": 1}

    usage = client.get(f"{BASE}/inspect", params={"key": f"{PREFIX}m.png"}).json()["usage"]
    assert (usage["manual_refs"], usage["published_refs"]) == (0, 0)


def test_version_hook_loads_snapshot_from_versions_bucket(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    versions: InMemoryBlobStorage = test_app["versions"]  # type: ignore[assignment]
    version_id = uuid.uuid4()
    s3_key = f"ebooks/main/versions/{version_id}.json"
    versions.objects[s3_key] = doc(image_node("snap.png"))

    async def seed() -> None:
        async with session_factory() as session:  # type: ignore[operator]
            ebook = Ebook(slug="main", content=doc())
            session.add(ebook)
            await session.flush()
            session.add(EbookVersion(id=version_id, ebook_id=ebook.id, kind=EbookVersionKind.manual, s3_key=s3_key))
            await session.commit()

    asyncio.run(seed())

    res = client.post(f"{BASE}/versions", json={"version_id": str(version_id), "kind": "manual"})
    assert res.status_code == 201, res.text
    assert res.json()["media_keys"] == 1

    missing = client.post(f"{BASE}/versions", json={"version_id": str(uuid.uuid4()), "kind": "manual"})
    assert missing.status_code == 404


def test_reindex_and_audit_endpoints(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    media: InMemoryBlobStorage = test_app["media"]  # type: ignore[assignment]
    media.objects[f"{PREFIX}orphan.png"] = b"binary"

    reindex = client.post(f"{BASE}/reindex")
    assert reindex.status_code == 200
    assert reindex.json()["versions_scanned"] == 0

    audit = client.post(f"{BASE}/audit")
    assert audit.status_code == 200
    assert audit.json()["orphans"] == [{"kind": "orphan_in_s3", "key": f"{PREFIX}orphan.png"}]
    assert audit.json()["checked_count"] == 1


def test_unreachable_bucket_maps_to_503(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    media: InMemoryBlobStorage = test_app["media"]  # type: ignore[assignment]
    media.ping_error = BlobStorageError("no route to host", reason="s3_unreachable")

    res = client.post(f"{BASE}/gc")

    assert res.status_code == 503
    assert res.json()["code"] == "backend_unavailable"


def test_dead_letter_endpoints(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    listing = client.get(f"{BASE}/dead-letters")
    assert listing.status_code == 200
    assert listing.json()["items"] == []

    res = client.post(f"{BASE}/dead-letters/requeue", json={"media_key": f"{PREFIX}none.png"})
    assert res.status_code == 404
