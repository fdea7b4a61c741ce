from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text, false, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ebook_media.db.base import Base


class MediaUsage(Base):
    """Per-key reference counters. All-false/zero means deletion-eligible, not deleted."""

    __tablename__ = "ebook_media_usage"
    __table_args__ = (
        CheckConstraint("manual_refs >= 0", name="ck_ebook_media_usage_manual_refs_nonneg"),
        CheckConstraint("published_refs >= 0", name="ck_ebook_media_usage_published_refs_nonneg"),
    )

    media_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    in_autosave: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    manual_refs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    published_refs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    @property
    def is_referenced(self) -> bool:
        return bool(self.in_autosave) or int(self.manual_refs or 0) > 0 or int(self.published_refs or 0) > 0


class MediaPendingDeletion(Base):
    """Candidate believed unreferenced at enqueue time; the GC re-verifies before deleting."""

    __tablename__ = "ebook_media_pending_deletion"

    media_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(64), nullable=True)


class EbookVersionMedia(Base):
    """Keys a version contributed, with the counter (``kind``) they were added to."""

    __tablename__ = "ebook_version_media"
    __table_args__ = (
        CheckConstraint("kind IN ('manual', 'published')", name="ck_ebook_version_media_kind"),
    )

    version_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    media_key: Mapped[str] = mapped_column(String(1024), primary_key=True, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)


class MediaDeletionDeadLetter(Base):
    """Keys whose physical deletion kept failing; parked for operators."""

    __tablename__ = "ebook_media_deletion_dead_letters"

    media_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dead_lettered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
