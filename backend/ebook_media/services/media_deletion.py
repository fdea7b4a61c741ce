from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.core.config import settings
from ebook_media.models.media_usage import MediaDeletionDeadLetter, MediaPendingDeletion
from ebook_media.schemas.media_usage import MediaDeletionResult, MediaPendingDeletionRead, MediaUsageRead
from ebook_media.services import media_ledger
from ebook_media.services.media_extractor import media_key_from_url

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def grace_period() -> timedelta:
    return timedelta(minutes=max(1, int(settings.media_deletion_grace_minutes or 15)))


def normalize_media_key(raw: str) -> str:
    """Accept a storage key or a CDN URL; reject anything outside the managed prefix."""
    value = (raw or "").strip()
    prefix = settings.media_key_prefix or ""
    key = media_key_from_url(value, cdn_base=settings.assets_cdn_base_url, allowed_prefix=prefix)
    if key is None and "://" not in value:
        key = value.lstrip("/")
    if not key or (prefix and not key.startswith(prefix)) or ".." in key.split("/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Media key is outside the managed prefix")
    return key


async def schedule_pending(session: AsyncSession, media_key: str, *, now: datetime) -> MediaPendingDeletion:
    not_before = now + grace_period()
    insert_fn = media_ledger.dialect_insert(session)
    stmt = insert_fn(MediaPendingDeletion).values(
        media_key=media_key,
        requested_at=now,
        not_before=not_before,
        attempts=0,
        last_checked_at=None,
        last_error=None,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[MediaPendingDeletion.media_key],
        set_={
            "requested_at": now,
            "not_before": not_before,
            "attempts": 0,
            "last_checked_at": None,
            "last_error": None,
        },
    )
    await session.execute(stmt)
    return MediaPendingDeletion(
        media_key=media_key,
        requested_at=now,
        not_before=not_before,
        attempts=0,
        last_checked_at=None,
        last_error=None,
    )


async def enqueue_deletion(
    session: AsyncSession,
    media_key: str,
    *,
    now: datetime | None = None,
) -> MediaDeletionResult:
    """Schedule physical deletion if nothing references the key; otherwise answer `retained`."""
    key = normalize_media_key(media_key)
    current = now or _now()
    usage = await media_ledger.load_usage(session, key)
    if usage is not None and usage.is_referenced:
        logger.info(
            "media_deletion_retained",
            extra={
                "media_key": key,
                "in_autosave": bool(usage.in_autosave),
                "manual_refs": int(usage.manual_refs),
                "published_refs": int(usage.published_refs),
            },
        )
        return MediaDeletionResult(status="retained", media_key=key, usage=MediaUsageRead.model_validate(usage))

    pending = await schedule_pending(session, key, now=current)
    await session.commit()
    logger.info("media_deletion_enqueued", extra={"media_key": key, "not_before": pending.not_before.isoformat()})
    return MediaDeletionResult(
        status="enqueued",
        media_key=key,
        not_before=pending.not_before,
        usage=MediaUsageRead.model_validate(usage) if usage else None,
    )


async def requeue_dead_letter(
    session: AsyncSession,
    media_key: str,
    *,
    now: datetime | None = None,
) -> MediaPendingDeletionRead:
    key = normalize_media_key(media_key)
    dead_letter = await session.get(MediaDeletionDeadLetter, key)
    if dead_letter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead-lettered media key not found")
    previous_attempts = int(dead_letter.attempts)
    pending = await schedule_pending(session, key, now=now or _now())
    await session.execute(delete(MediaDeletionDeadLetter).where(MediaDeletionDeadLetter.media_key == key))
    await session.commit()
    logger.info("media_dead_letter_requeued", extra={"media_key": key, "previous_attempts": previous_attempts})
    return MediaPendingDeletionRead.model_validate(pending)
