from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.core.config import settings
from ebook_media.models.media_usage import MediaUsage
from ebook_media.schemas.media_usage import AuditFinding, AuditResult
from ebook_media.services import media_ledger
from ebook_media.services.blob_storage import BlobStorageError, MediaStorage

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def audit_prefix() -> str:
    return (settings.media_audit_prefix or settings.media_key_prefix or "").lstrip("/")


async def _known_keys(session: AsyncSession, keys: list[str]) -> set[str]:
    if not keys:
        return set()
    rows = await session.execute(select(MediaUsage.media_key).where(MediaUsage.media_key.in_(keys)))
    return set(rows.scalars().all())


async def _stale_keys(session: AsyncSession, *, now: datetime) -> list[str]:
    cutoff = now - timedelta(days=max(0, int(settings.media_audit_stale_days)))
    limit = max(0, int(settings.media_audit_missing_sample_limit))
    if limit == 0:
        return []
    rows = await session.execute(
        select(MediaUsage.media_key)
        .where(MediaUsage.last_seen_at < cutoff)
        .order_by(MediaUsage.last_seen_at.asc(), MediaUsage.media_key.asc())
        .limit(limit)
    )
    return list(rows.scalars().all())


async def run_audit(session: AsyncSession, storage: MediaStorage, *, now: datetime | None = None) -> AuditResult:
    """Compare the media bucket with the usage ledger without changing either.

    Orphans are stored objects with no usage row. Missing keys are ledger rows
    not seen for a while whose object no longer exists in the bucket.
    """
    started = time.monotonic()
    await media_ledger.ensure_database_reachable(session)
    await media_ledger.ensure_storage_reachable(storage)
    current = now or _now()
    prefix = audit_prefix()
    result = AuditResult()

    async for page in storage.iter_key_pages(prefix):
        keys = [key for key in page if key and not key.endswith("/")]
        result.checked_count += len(keys)
        known = await _known_keys(session, keys)
        result.orphans.extend(AuditFinding(kind="orphan_in_s3", key=key) for key in keys if key not in known)

    for media_key in await _stale_keys(session, now=current):
        result.sampled_count += 1
        try:
            found = await storage.exists(media_key)
        except BlobStorageError as exc:
            result.probe_errors += 1
            logger.warning("media_audit_probe_failed", extra={"media_key": media_key, "reason": exc.reason})
            continue
        if not found:
            result.missing.append(AuditFinding(kind="missing_in_s3", key=media_key))

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "media_audit_completed",
        extra={
            "prefix": prefix,
            "bucket": storage.bucket,
            "checked_count": result.checked_count,
            "sampled_count": result.sampled_count,
            "orphans": len(result.orphans),
            "missing": len(result.missing),
            "probe_errors": result.probe_errors,
            "duration_ms": result.duration_ms,
        },
    )
    return result
