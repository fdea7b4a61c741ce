from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.db.session import get_session
from ebook_media.schemas.media_usage import (
    AuditResult,
    AutosaveSyncRequest,
    AutosaveSyncResult,
    EbookVersionKindLiteral,
    GarbageCollectionResult,
    MediaDeadLetterListResponse,
    MediaDeletionResult,
    MediaInspectResponse,
    MediaKeyRequest,
    MediaPendingDeletionRead,
    MediaPendingListResponse,
    ReindexResult,
    VersionCreatedRequest,
    VersionLedgerResult,
)
from ebook_media.services import document_store, media_audit, media_deletion, media_gc, media_ledger, media_reindex
from ebook_media.services.blob_storage import BlobStorageError, MediaStorage, get_media_storage, get_versions_storage

router = APIRouter(prefix="/ebook/admin/media", tags=["ebook-media"])


@router.post("/reindex", response_model=ReindexResult)
async def reindex_media_usage(
    session: AsyncSession = Depends(get_session),
    versions_storage: MediaStorage = Depends(get_versions_storage),
) -> ReindexResult:
    return await media_reindex.reindex_now(session, versions_storage=versions_storage)


@router.post("/deletions", response_model=MediaDeletionResult)
async def enqueue_media_deletion(
    payload: MediaKeyRequest,
    session: AsyncSession = Depends(get_session),
) -> MediaDeletionResult:
    return await media_deletion.enqueue_deletion(session, payload.media_key)


@router.post("/gc", response_model=GarbageCollectionResult)
async def run_media_gc(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    storage: MediaStorage = Depends(get_media_storage),
) -> GarbageCollectionResult:
    return await media_gc.run_gc_batch(session, storage, batch_size=batch_size)


@router.post("/audit", response_model=AuditResult)
async def run_media_audit(
    session: AsyncSession = Depends(get_session),
    storage: MediaStorage = Depends(get_media_storage),
) -> AuditResult:
    return await media_audit.run_audit(session, storage)


@router.get("/pending", response_model=MediaPendingListResponse)
async def list_pending_deletions(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> MediaPendingListResponse:
    return await media_ledger.list_pending(session, limit=limit, offset=offset)


@router.get("/inspect", response_model=MediaInspectResponse)
async def inspect_media_key(
    key: str = Query(min_length=1, max_length=2048),
    session: AsyncSession = Depends(get_session),
) -> MediaInspectResponse:
    return await media_ledger.inspect_media(session, media_deletion.normalize_media_key(key))


@router.get("/dead-letters", response_model=MediaDeadLetterListResponse)
async def list_media_dead_letters(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> MediaDeadLetterListResponse:
    return await media_ledger.list_dead_letters(session, limit=limit, offset=offset)


@router.post("/dead-letters/requeue", response_model=MediaPendingDeletionRead)
async def requeue_media_dead_letter(
    payload: MediaKeyRequest,
    session: AsyncSession = Depends(get_session),
) -> MediaPendingDeletionRead:
    return await media_deletion.requeue_dead_letter(session, payload.media_key)


@router.put("/autosave", response_model=AutosaveSyncResult)
async def sync_autosave_usage(
    payload: AutosaveSyncRequest,
    session: AsyncSession = Depends(get_session),
) -> AutosaveSyncResult:
    return await media_ledger.sync_autosave(session, payload.content)


@router.post("/versions", response_model=VersionLedgerResult, status_code=status.HTTP_201_CREATED)
async def record_version_usage(
    payload: VersionCreatedRequest,
    session: AsyncSession = Depends(get_session),
    versions_storage: MediaStorage = Depends(get_versions_storage),
) -> VersionLedgerResult:
    content = payload.content
    if content is None:
        ref = await document_store.get_version_ref(session, payload.version_id)
        if ref is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ebook version not found")
        try:
            content = await document_store.get_version_content(versions_storage, ref)
        except BlobStorageError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Version snapshot could not be read ({exc.reason})",
            ) from exc
    return await media_ledger.record_version_created(
        session,
        version_id=payload.version_id,
        kind=payload.kind,
        content=content,
    )


@router.delete("/versions/{version_id}", response_model=VersionLedgerResult)
async def release_version_usage(
    version_id: UUID,
    kind: EbookVersionKindLiteral | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> VersionLedgerResult:
    return await media_ledger.record_version_removed(session, version_id=version_id, kind=kind)
