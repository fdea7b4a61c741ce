from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.models.ebook import EbookVersionKind
from ebook_media.models.media_usage import (
    EbookVersionMedia,
    MediaDeletionDeadLetter,
    MediaPendingDeletion,
    MediaUsage,
)
from ebook_media.schemas.media_usage import (
    AutosaveSyncResult,
    MediaDeadLetterListResponse,
    MediaDeadLetterRead,
    MediaInspectResponse,
    MediaPendingDeletionRead,
    MediaPendingListResponse,
    MediaUsageRead,
    VersionLedgerResult,
)
from ebook_media.services.blob_storage import BlobStorageError, MediaStorage
from ebook_media.services.media_extractor import extract_configured_media_keys

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 500
_DEFAULT_PAGE_LIMIT = 20
_MAX_PAGE_LIMIT = 200


class MediaBackendUnavailableError(RuntimeError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(keys: Iterable[str]) -> Iterable[list[str]]:
    ordered = sorted(set(keys))
    for idx in range(0, len(ordered), _CHUNK_SIZE):
        yield ordered[idx : idx + _CHUNK_SIZE]


def dialect_insert(session: AsyncSession):
    dialect = (session.get_bind().dialect.name or "").lower()
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for usage upserts: {dialect}")


def counter_column(kind: EbookVersionKind | str):
    if EbookVersionKind(kind) == EbookVersionKind.manual:
        return MediaUsage.__table__.c.manual_refs
    return MediaUsage.__table__.c.published_refs


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    value = int(limit or 0)
    if value <= 0 or value > _MAX_PAGE_LIMIT:
        value = _DEFAULT_PAGE_LIMIT
    return value, max(0, int(offset or 0))


async def ensure_database_reachable(session: AsyncSession) -> None:
    try:
        await session.execute(select(1))
    except (SQLAlchemyError, OSError) as exc:
        raise MediaBackendUnavailableError(f"Database is unreachable: {exc}") from exc


async def ensure_storage_reachable(storage: MediaStorage) -> None:
    try:
        await storage.ping()
    except BlobStorageError as exc:
        raise MediaBackendUnavailableError(f"Bucket {storage.bucket} is unreachable: {exc}") from exc


async def load_usage(session: AsyncSession, media_key: str) -> MediaUsage | None:
    result = await session.execute(
        select(MediaUsage).where(MediaUsage.media_key == media_key).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_in_autosave(session: AsyncSession, keys: Iterable[str], *, now: datetime | None = None) -> None:
    seen_at = now or _now()
    insert_fn = dialect_insert(session)
    for chunk in _chunks(keys):
        stmt = insert_fn(MediaUsage).values(
            [{"media_key": key, "in_autosave": True, "last_seen_at": seen_at} for key in chunk]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MediaUsage.media_key],
            set_={"in_autosave": True, "last_seen_at": seen_at},
        )
        await session.execute(stmt)


async def increment_refs(
    session: AsyncSession,
    keys: Iterable[str],
    *,
    kind: EbookVersionKind | str,
    now: datetime | None = None,
) -> None:
    column = counter_column(kind)
    seen_at = now or _now()
    insert_fn = dialect_insert(session)
    for chunk in _chunks(keys):
        stmt = insert_fn(MediaUsage).values(
            [{"media_key": key, column.key: 1, "last_seen_at": seen_at} for key in chunk]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MediaUsage.media_key],
            set_={column.key: column + 1, "last_seen_at": seen_at},
        )
        await session.execute(stmt)


async def decrement_refs(session: AsyncSession, keys: Iterable[str], *, kind: EbookVersionKind | str) -> int:
    """Decrement one counter per key, flooring at zero. Returns how many keys were clamped."""
    column = counter_column(kind)
    clamped_total = 0
    for chunk in _chunks(keys):
        current = dict(
            (await session.execute(select(MediaUsage.media_key, column).where(MediaUsage.media_key.in_(chunk)))).all()
        )
        missing = [key for key in chunk if key not in current]
        if missing:
            logger.warning(
                "media_usage_mapping_missing_key",
                extra={"counter": column.key, "count": len(missing), "media_keys": missing[:20]},
            )
        clamped = [key for key, value in current.items() if int(value or 0) <= 0]
        if clamped:
            clamped_total += len(clamped)
            logger.warning(
                "media_usage_counter_clamped",
                extra={"counter": column.key, "count": len(clamped), "media_keys": clamped[:20]},
            )
        await session.execute(
            update(MediaUsage)
            .where(MediaUsage.media_key.in_(chunk))
            .values({column.key: case((column > 0, column - 1), else_=0)})
            .execution_options(synchronize_session=False)
        )
    return clamped_total


async def replace_version_mapping(
    session: AsyncSession, version_id: UUID, keys: Iterable[str], *, kind: EbookVersionKind | str
) -> int:
    version_kind = EbookVersionKind(kind)
    await session.execute(delete(EbookVersionMedia).where(EbookVersionMedia.version_id == version_id))
    rows = [
        EbookVersionMedia(version_id=version_id, media_key=key, kind=version_kind.value) for key in sorted(set(keys))
    ]
    session.add_all(rows)
    await session.flush()
    return len(rows)


async def mapped_keys(session: AsyncSession, version_id: UUID) -> list[str]:
    rows = await session.execute(
        select(EbookVersionMedia.media_key).where(EbookVersionMedia.version_id == version_id)
    )
    return list(rows.scalars().all())


async def mapped_contribution(session: AsyncSession, version_id: UUID) -> dict[EbookVersionKind, list[str]]:
    """Keys a version currently contributes, grouped by the counter they were added to."""
    rows = await session.execute(
        select(EbookVersionMedia.kind, EbookVersionMedia.media_key).where(EbookVersionMedia.version_id == version_id)
    )
    contribution: dict[EbookVersionKind, list[str]] = {}
    for kind, key in rows.all():
        contribution.setdefault(EbookVersionKind(kind), []).append(key)
    return contribution


async def _release_contribution(session: AsyncSession, version_id: UUID) -> dict[EbookVersionKind, list[str]]:
    contribution = await mapped_contribution(session, version_id)
    for kind, keys in contribution.items():
        await decrement_refs(session, keys, kind=kind)
    await session.execute(delete(EbookVersionMedia).where(EbookVersionMedia.version_id == version_id))
    return contribution


async def sync_autosave(session: AsyncSession, content: Any, *, now: datetime | None = None) -> AutosaveSyncResult:
    """Mirror the draft's references into the autosave flag: set for present keys, clear for the rest."""
    keys = extract_configured_media_keys(content)
    await mark_in_autosave(session, keys, now=now)
    stmt = update(MediaUsage).where(MediaUsage.in_autosave.is_(True))
    if keys:
        stmt = stmt.where(MediaUsage.media_key.not_in(sorted(keys)))
    result = await session.execute(stmt.values(in_autosave=False).execution_options(synchronize_session=False))
    await session.commit()
    released = int(result.rowcount or 0)
    logger.info("media_autosave_synced", extra={"keys_in_draft": len(keys), "released": released})
    return AutosaveSyncResult(keys_in_draft=len(keys), released=released)


async def record_version_created(
    session: AsyncSession,
    *,
    version_id: UUID,
    kind: EbookVersionKind | str,
    content: Any,
    now: datetime | None = None,
) -> VersionLedgerResult:
    version_kind = EbookVersionKind(kind)
    keys = extract_configured_media_keys(content)
    # Re-recording a version (including a manual -> published promotion) first
    # takes back what it added, from the counters it was added to.
    await _release_contribution(session, version_id)
    await replace_version_mapping(session, version_id, keys, kind=version_kind)
    await increment_refs(session, keys, kind=version_kind, now=now)
    await session.commit()
    logger.info(
        "media_version_recorded",
        extra={"version_id": str(version_id), "kind": version_kind.value, "media_keys": len(keys)},
    )
    return VersionLedgerResult(version_id=version_id, kind=version_kind.value, media_keys=len(keys))


async def record_version_removed(
    session: AsyncSession,
    *,
    version_id: UUID,
    kind: EbookVersionKind | str | None = None,
) -> VersionLedgerResult:
    """Release a version's references. Counters are decremented by the recorded kind, not ``kind``."""
    expected = EbookVersionKind(kind) if kind is not None else None
    contribution = await _release_contribution(session, version_id)
    await session.commit()
    recorded = sorted(item.value for item in contribution)
    if expected is not None and recorded and recorded != [expected.value]:
        logger.warning(
            "media_version_kind_mismatch",
            extra={"version_id": str(version_id), "expected_kind": expected.value, "recorded_kinds": recorded},
        )
    released_kind = recorded[0] if len(recorded) == 1 else (expected.value if expected else None)
    released = sum(len(keys) for keys in contribution.values())
    logger.info(
        "media_version_released",
        extra={"version_id": str(version_id), "kind": released_kind, "media_keys": released},
    )
    return VersionLedgerResult(version_id=version_id, kind=released_kind, media_keys=released)


async def list_pending(session: AsyncSession, *, limit: int = _DEFAULT_PAGE_LIMIT, offset: int = 0) -> MediaPendingListResponse:
    limit, offset = clamp_page(limit, offset)
    rows = (
        await session.execute(
            select(MediaPendingDeletion)
            .order_by(MediaPendingDeletion.not_before.asc(), MediaPendingDeletion.media_key.asc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return MediaPendingListResponse(
        items=[MediaPendingDeletionRead.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )


async def list_dead_letters(
    session: AsyncSession, *, limit: int = _DEFAULT_PAGE_LIMIT, offset: int = 0
) -> MediaDeadLetterListResponse:
    limit, offset = clamp_page(limit, offset)
    rows = (
        await session.execute(
            select(MediaDeletionDeadLetter)
            .order_by(MediaDeletionDeadLetter.dead_lettered_at.desc(), MediaDeletionDeadLetter.media_key.asc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return MediaDeadLetterListResponse(
        items=[MediaDeadLetterRead.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )


async def inspect_media(session: AsyncSession, media_key: str) -> MediaInspectResponse:
    usage = await load_usage(session, media_key)
    version_ids: Sequence[UUID] = (
        await session.execute(
            select(EbookVersionMedia.version_id)
            .where(EbookVersionMedia.media_key == media_key)
            .order_by(EbookVersionMedia.version_id.asc())
        )
    ).scalars().all()
    pending = await session.get(MediaPendingDeletion, media_key)
    dead_letter = await session.get(MediaDeletionDeadLetter, media_key)
    return MediaInspectResponse(
        media_key=media_key,
        usage=MediaUsageRead.model_validate(usage) if usage else None,
        version_ids=list(version_ids),
        pending=MediaPendingDeletionRead.model_validate(pending) if pending else None,
        dead_letter=MediaDeadLetterRead.model_validate(dead_letter) if dead_letter else None,
    )
