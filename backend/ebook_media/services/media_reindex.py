from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.models.media_usage import EbookVersionMedia, MediaUsage
from ebook_media.schemas.media_usage import ReindexResult
from ebook_media.services import document_store, media_ledger
from ebook_media.services.blob_storage import BlobStorageError, MediaStorage
from ebook_media.services.media_extractor import extract_configured_media_keys

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _read_snapshot_keys(
    session: AsyncSession, versions_storage: MediaStorage, ref: document_store.VersionSnapshotRef
) -> tuple[set[str], bool]:
    """Keys of one snapshot, and whether they came from its body (False: existing mapping rows)."""
    try:
        content = await document_store.get_version_content(versions_storage, ref)
    except BlobStorageError as exc:
        keys = set(await media_ledger.mapped_keys(session, ref.id))
        logger.warning(
            "media_reindex_version_unreadable",
            extra={
                "version_id": str(ref.id),
                "storage_key": ref.storage_key,
                "reason": exc.reason,
                "fallback_mapped_keys": len(keys),
            },
        )
        return keys, False
    return extract_configured_media_keys(content), True


async def reindex_now(
    session: AsyncSession,
    *,
    versions_storage: MediaStorage,
    now: datetime | None = None,
) -> ReindexResult:
    """Rebuild counters, flags and version mappings from the draft and every stored snapshot.

    Snapshot bodies are fetched and reduced to key sets before the first write,
    so usage rows are only locked for the database phase. That phase commits
    once, so concurrent readers (the GC above all) never observe the zeroed
    intermediate state. A snapshot whose body cannot be fetched keeps
    contributing through its existing mapping rows.
    """
    started = time.monotonic()
    await media_ledger.ensure_database_reachable(session)
    await media_ledger.ensure_storage_reachable(versions_storage)
    current = now or _now()

    draft = await document_store.get_draft_content(session)
    if draft is None:
        logger.warning("media_reindex_draft_missing")
        autosave_keys: set[str] = set()
    else:
        autosave_keys = extract_configured_media_keys(draft)

    refs = await document_store.list_version_refs(session)
    snapshots: list[tuple[document_store.VersionSnapshotRef, set[str], bool]] = []
    for ref in refs:
        keys, readable = await _read_snapshot_keys(session, versions_storage, ref)
        snapshots.append((ref, keys, readable))

    await session.execute(
        update(MediaUsage)
        .values(in_autosave=False, manual_refs=0, published_refs=0)
        .execution_options(synchronize_session=False)
    )
    await media_ledger.mark_in_autosave(session, autosave_keys, now=current)

    discovered = set(autosave_keys)
    versions_failed = 0
    mapping_rows = 0
    for ref, keys, readable in snapshots:
        if not readable:
            versions_failed += 1
        # The version row's kind is authoritative; mapping rows are rewritten to match it.
        mapping_rows += await media_ledger.replace_version_mapping(session, ref.id, keys, kind=ref.kind)
        await media_ledger.increment_refs(session, keys, kind=ref.kind, now=current)
        discovered.update(keys)

    stale_mapping = delete(EbookVersionMedia)
    if refs:
        stale_mapping = stale_mapping.where(EbookVersionMedia.version_id.not_in([ref.id for ref in refs]))
    await session.execute(stale_mapping)
    await session.commit()

    result = ReindexResult(
        keys_discovered=len(discovered),
        autosave_keys=len(autosave_keys),
        versions_scanned=len(refs),
        versions_failed=versions_failed,
        mapping_rows=mapping_rows,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info("media_reindex_completed", extra=result.model_dump())
    return result
