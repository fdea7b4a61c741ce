"""ebook media usage ledger, deletion queue and dead letters

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "ebook_media_usage",
        sa.Column("media_key", sa.String(length=1024), primary_key=True, nullable=False),
        sa.Column("in_autosave", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("manual_refs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_refs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("manual_refs >= 0", name="ck_ebook_media_usage_manual_refs_nonneg"),
        sa.CheckConstraint("published_refs >= 0", name="ck_ebook_media_usage_published_refs_nonneg"),
    )
    op.create_index("ix_ebook_media_usage_last_seen_at", "ebook_media_usage", ["last_seen_at"])

    op.create_table(
        "ebook_media_pending_deletion",
        sa.Column("media_key", sa.String(length=1024), primary_key=True, nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_ebook_media_pending_deletion_not_before", "ebook_media_pending_deletion", ["not_before"])

    op.create_table(
        "ebook_version_media",
        sa.Column("version_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("media_key", sa.String(length=1024), primary_key=True, nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.CheckConstraint("kind IN ('manual', 'published')", name="ck_ebook_version_media_kind"),
    )
    op.create_index("ix_ebook_version_media_media_key", "ebook_version_media", ["media_key"])

    op.create_table(
        "ebook_media_deletion_dead_letters",
        sa.Column("media_key", sa.String(length=1024), primary_key=True, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_ebook_media_deletion_dead_letters_dead_lettered_at",
        "ebook_media_deletion_dead_letters",
        ["dead_lettered_at"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_ebook_media_deletion_dead_letters_dead_lettered_at",
        table_name="ebook_media_deletion_dead_letters",
    )
    op.drop_table("ebook_media_deletion_dead_letters")
    op.drop_index("ix_ebook_version_media_media_key", table_name="ebook_version_media")
    op.drop_table("ebook_version_media")
    op.drop_index("ix_ebook_media_pending_deletion_not_before", table_name="ebook_media_pending_deletion")
    op.drop_table("ebook_media_pending_deletion")
    op.drop_index("ix_ebook_media_usage_last_seen_at", table_name="ebook_media_usage")
    op.drop_table("ebook_media_usage")
