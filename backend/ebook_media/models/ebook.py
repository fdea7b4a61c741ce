from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ebook_media.db.base import Base


class EbookVersionKind(str, enum.Enum):
    manual = "manual"
    published = "published"


class Ebook(Base):
    """Live draft owned by the editor service; the media ledger only reads it."""

    __tablename__ = "ebooks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    content: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    versions: Mapped[list["EbookVersion"]] = relationship(
        "EbookVersion", back_populates="ebook", cascade="all, delete-orphan", lazy="selectin"
    )


class EbookVersion(Base):
    """Snapshot row; the body lives in the versions bucket under `s3_key`."""

    __tablename__ = "ebook_versions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ebook_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ebooks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[EbookVersionKind] = mapped_column(Enum(EbookVersionKind), nullable=False, index=True)
    s3_key: Mapped[str] = mapped_column(String(512), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    ebook: Mapped[Ebook] = relationship("Ebook", back_populates="versions")
