from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


EbookVersionKindLiteral = Literal["manual", "published"]
DeletionStatusLiteral = Literal["retained", "enqueued"]
AuditFindingKindLiteral = Literal["orphan_in_s3", "missing_in_s3"]


class MediaUsageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    media_key: str
    in_autosave: bool
    manual_refs: int
    published_refs: int
    last_seen_at: datetime


class MediaPendingDeletionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    media_key: str
    requested_at: datetime
    not_before: datetime
    attempts: int
    last_checked_at: datetime | None = None
    last_error: str | None = None


class MediaDeadLetterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    media_key: str
    attempts: int
    last_error: str | None = None
    error_message: str | None = None
    requested_at: datetime
    dead_lettered_at: datetime


class MediaPendingListResponse(BaseModel):
    items: list[MediaPendingDeletionRead]
    limit: int
    offset: int


class MediaDeadLetterListResponse(BaseModel):
    items: list[MediaDeadLetterRead]
    limit: int
    offset: int


class MediaInspectResponse(BaseModel):
    media_key: str
    usage: MediaUsageRead | None = None
    version_ids: list[UUID] = Field(default_factory=list)
    pending: MediaPendingDeletionRead | None = None
    dead_letter: MediaDeadLetterRead | None = None


class MediaKeyRequest(BaseModel):
    media_key: str = Field(min_length=1, max_length=2048, description="Storage key or CDN URL of the asset")


class MediaDeletionResult(BaseModel):
    status: DeletionStatusLiteral
    media_key: str
    not_before: datetime | None = None
    usage: MediaUsageRead | None = None


class AutosaveSyncRequest(BaseModel):
    content: Any = None


class AutosaveSyncResult(BaseModel):
    keys_in_draft: int
    released: int


class VersionCreatedRequest(BaseModel):
    version_id: UUID
    kind: EbookVersionKindLiteral
    content: Any = None


class VersionLedgerResult(BaseModel):
    version_id: UUID
    kind: EbookVersionKindLiteral | None = None
    media_keys: int


class ReindexResult(BaseModel):
    keys_discovered: int
    autosave_keys: int
    versions_scanned: int
    versions_failed: int
    mapping_rows: int
    duration_ms: int


class GarbageCollectionResult(BaseModel):
    checked: int = 0
    deleted: int = 0
    retained: int = 0
    errors: int = 0
    dead_lettered: int = 0
    error_reasons: dict[str, int] = Field(default_factory=dict)
    duration_ms: int = 0


class AuditFinding(BaseModel):
    kind: AuditFindingKindLiteral
    key: str


class AuditResult(BaseModel):
    orphans: list[AuditFinding] = Field(default_factory=list)
    missing: list[AuditFinding] = Field(default_factory=list)
    checked_count: int = 0
    sampled_count: int = 0
    probe_errors: int = 0
    duration_ms: int = 0
