from ebook_media.db.base import Base  # noqa: F401
from ebook_media.models.ebook import Ebook, EbookVersion, EbookVersionKind  # noqa: F401
from ebook_media.models.media_usage import (  # noqa: F401
    EbookVersionMedia,
    MediaDeletionDeadLetter,
    MediaPendingDeletion,
    MediaUsage,
)

__all__ = [
    "Base",
    "Ebook",
    "EbookVersion",
    "EbookVersionKind",
    "EbookVersionMedia",
    "MediaDeletionDeadLetter",
    "MediaPendingDeletion",
    "MediaUsage",
]
