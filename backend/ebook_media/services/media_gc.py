from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.core.config import settings
from ebook_media.models.media_usage import MediaDeletionDeadLetter, MediaPendingDeletion, MediaUsage
from ebook_media.schemas.media_usage import GarbageCollectionResult
from ebook_media.services import media_ledger
from ebook_media.services.blob_storage import BlobStorageError, MediaStorage
from ebook_media.services.media_deletion import grace_period

logger = logging.getLogger(__name__)

_MAX_BATCH_SIZE = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _batch_size(value: int | None) -> int:
    size = int(value or settings.media_gc_batch_size or 100)
    return max(1, min(size, _MAX_BATCH_SIZE))


def _max_attempts() -> int:
    return max(0, int(settings.media_gc_max_attempts or 0))


async def _due_keys(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    rows = await session.execute(
        select(MediaPendingDeletion.media_key)
        .where(MediaPendingDeletion.not_before <= now)
        .order_by(MediaPendingDeletion.not_before.asc(), MediaPendingDeletion.media_key.asc())
        .limit(limit)
    )
    return list(rows.scalars().all())


async def _load_pending(session: AsyncSession, media_key: str) -> MediaPendingDeletion | None:
    result = await session.execute(
        select(MediaPendingDeletion)
        .where(MediaPendingDeletion.media_key == media_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _dead_letter(
    session: AsyncSession,
    pending: MediaPendingDeletion,
    *,
    error: BlobStorageError,
    now: datetime,
) -> None:
    values = {
        "attempts": int(pending.attempts),
        "last_error": error.reason,
        "error_message": str(error)[:2000],
        "requested_at": pending.requested_at,
        "dead_lettered_at": now,
    }
    insert_fn = media_ledger.dialect_insert(session)
    stmt = insert_fn(MediaDeletionDeadLetter).values(media_key=pending.media_key, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[MediaDeletionDeadLetter.media_key], set_=values)
    await session.execute(stmt)
    await session.delete(pending)


async def run_gc_batch(
    session: AsyncSession,
    storage: MediaStorage,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> GarbageCollectionResult:
    """Process one bounded batch of due deletion candidates.

    Every candidate is re-verified against the usage ledger right before the
    object is removed, so a key referenced again after it was enqueued is
    retained. Storage failures are absorbed per key; an unreachable database
    or bucket at the start of the run propagates.
    """
    started = time.monotonic()
    await media_ledger.ensure_database_reachable(session)
    await media_ledger.ensure_storage_reachable(storage)
    current = now or _now()
    max_attempts = _max_attempts()
    result = GarbageCollectionResult()

    for media_key in await _due_keys(session, now=current, limit=_batch_size(batch_size)):
        pending = await _load_pending(session, media_key)
        if pending is None:
            continue
        result.checked += 1
        pending.last_checked_at = current

        usage = await media_ledger.load_usage(session, media_key)
        if usage is not None and usage.is_referenced:
            await session.delete(pending)
            await session.commit()
            result.retained += 1
            logger.info(
                "media_gc_retained",
                extra={
                    "media_key": media_key,
                    "in_autosave": bool(usage.in_autosave),
                    "manual_refs": int(usage.manual_refs),
                    "published_refs": int(usage.published_refs),
                },
            )
            continue

        try:
            await storage.delete(media_key)
        except BlobStorageError as exc:
            result.errors += 1
            result.error_reasons[exc.reason] = result.error_reasons.get(exc.reason, 0) + 1
            pending.attempts = int(pending.attempts or 0) + 1
            pending.last_error = exc.reason
            attempts = pending.attempts
            if max_attempts and attempts >= max_attempts:
                await _dead_letter(session, pending, error=exc, now=current)
                result.dead_lettered += 1
                logger.error(
                    "media_gc_dead_lettered",
                    extra={"media_key": media_key, "reason": exc.reason, "attempts": attempts},
                )
            else:
                pending.not_before = current + grace_period()
                logger.warning(
                    "media_gc_delete_failed",
                    extra={
                        "media_key": media_key,
                        "reason": exc.reason,
                        "attempts": attempts,
                        "max_attempts": max_attempts,
                    },
                )
            await session.commit()
            continue

        await session.delete(pending)
        await session.execute(delete(MediaUsage).where(MediaUsage.media_key == media_key))
        await session.commit()
        result.deleted += 1
        logger.info("media_gc_deleted", extra={"media_key": media_key, "bucket": storage.bucket})

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info("media_gc_run_completed", extra=result.model_dump())
    return result
