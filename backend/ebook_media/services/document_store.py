from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ebook_media.core.config import settings
from ebook_media.models.ebook import Ebook, EbookVersion, EbookVersionKind
from ebook_media.services.blob_storage import MediaStorage


@dataclass(frozen=True, slots=True)
class VersionSnapshotRef:
    id: UUID
    kind: EbookVersionKind
    storage_key: str


async def get_draft_content(session: AsyncSession, *, slug: str | None = None) -> Any | None:
    """Live draft body of the configured ebook, or None when the ebook row does not exist."""
    result = await session.execute(select(Ebook.content).where(Ebook.slug == (slug or settings.ebook_slug)))
    row = result.first()
    if row is None:
        return None
    return row[0] if row[0] is not None else {}


async def list_version_refs(session: AsyncSession) -> list[VersionSnapshotRef]:
    rows = (
        await session.execute(
            select(EbookVersion.id, EbookVersion.kind, EbookVersion.s3_key).order_by(EbookVersion.created_at.asc())
        )
    ).all()
    return [VersionSnapshotRef(id=row_id, kind=EbookVersionKind(kind), storage_key=key) for row_id, kind, key in rows]


async def get_version_ref(session: AsyncSession, version_id: UUID) -> VersionSnapshotRef | None:
    row = (
        await session.execute(
            select(EbookVersion.id, EbookVersion.kind, EbookVersion.s3_key).where(EbookVersion.id == version_id)
        )
    ).first()
    if row is None:
        return None
    return VersionSnapshotRef(id=row[0], kind=EbookVersionKind(row[1]), storage_key=row[2])


async def get_version_content(storage: MediaStorage, ref: VersionSnapshotRef) -> Any:
    return await storage.get_json(ref.storage_key)
