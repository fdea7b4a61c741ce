import asyncio
import os
from collections.abc import Awaitable, Callable, Generator

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from ebook_media.core.config import settings
from ebook_media.models import Base

from media_testing import CDN, PREFIX, InMemoryBlobStorage


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _media_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "assets_cdn_base_url", CDN)
    monkeypatch.setattr(settings, "media_key_prefix", PREFIX)
    monkeypatch.setattr(settings, "media_fields", ["src", "href"])
    monkeypatch.setattr(settings, "ebook_slug", "main")
    monkeypatch.setattr(settings, "media_deletion_grace_minutes", 15)
    monkeypatch.setattr(settings, "media_gc_batch_size", 100)
    monkeypatch.setattr(settings, "media_gc_max_attempts", 10)
    monkeypatch.setattr(settings, "media_audit_prefix", None)
    monkeypatch.setattr(settings, "media_audit_stale_days", 90)
    monkeypatch.setattr(settings, "media_audit_missing_sample_limit", 1000)


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture
def make_session_factory() -> Callable[[], Awaitable[sa_asyncio.async_sessionmaker]]:
    async def _make() -> sa_asyncio.async_sessionmaker:
        engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return sa_asyncio.async_sessionmaker(engine, expire_on_commit=False)

    return _make


@pytest.fixture
def media_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage("test-media")


@pytest.fixture
def versions_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage("test-ebook-versions")


