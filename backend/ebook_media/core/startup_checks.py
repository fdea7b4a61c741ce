from __future__ import annotations

import logging
from urllib.parse import urlparse

from ebook_media.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    if not value:
        return False
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_storage_settings(problems: list[str], *, require_versions_bucket: bool) -> None:
    _append_if(
        problems,
        condition=not (settings.media_bucket or "").strip(),
        message="MEDIA_BUCKET must be set.",
    )
    _append_if(
        problems,
        condition=require_versions_bucket and not (settings.ebook_versions_bucket or "").strip(),
        message="EBOOK_VERSIONS_BUCKET must be set.",
    )


def _validate_media_key_settings(problems: list[str]) -> None:
    parsed = urlparse((settings.assets_cdn_base_url or "").strip())
    _append_if(
        problems,
        condition=parsed.scheme not in {"http", "https"} or not parsed.netloc,
        message="ASSETS_CDN_BASE_URL must be an absolute http(s) URL.",
    )
    prefix = settings.media_key_prefix or ""
    _append_if(
        problems,
        condition=not prefix.strip() or prefix.startswith("/") or not prefix.endswith("/"),
        message="MEDIA_KEY_PREFIX must be a relative key prefix ending with '/'.",
    )
    _append_if(
        problems,
        condition=not [field for field in settings.media_fields if str(field or "").strip()],
        message="MEDIA_FIELDS must list at least one field name.",
    )


def _validate_lifecycle_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=int(settings.media_deletion_grace_minutes) < 1,
        message="MEDIA_DELETION_GRACE_MINUTES must be at least 1.",
    )
    _append_if(
        problems,
        condition=int(settings.media_gc_batch_size) < 1,
        message="MEDIA_GC_BATCH_SIZE must be at least 1.",
    )
    _append_if(
        problems,
        condition=int(settings.media_gc_max_attempts) < 0,
        message="MEDIA_GC_MAX_ATTEMPTS must be 0 (no ceiling) or positive.",
    )


def _validate_database_settings(problems: list[str]) -> None:
    url = (settings.database_url or "").strip()
    _append_if(problems, condition=not url, message="DATABASE_URL must be set.")
    _append_if(
        problems,
        condition=_is_production() and (_looks_like_localhost(url) or url.startswith("sqlite")),
        message="DATABASE_URL must point to the production database (not localhost or sqlite).",
    )


def validate_runtime_settings(*, require_versions_bucket: bool = True) -> None:
    """
    Fail fast on missing or malformed configuration.

    Nothing touches the ledger or the buckets until every problem is fixed.
    """
    problems: list[str] = []
    _validate_database_settings(problems)
    _validate_storage_settings(problems, require_versions_bucket=require_versions_bucket)
    _validate_media_key_settings(problems)
    _validate_lifecycle_settings(problems)

    if problems:
        raise RuntimeError("Media lifecycle configuration checks failed:\n- " + "\n- ".join(problems))
    logger.debug("media_lifecycle_settings_validated", extra={"environment": settings.environment})
