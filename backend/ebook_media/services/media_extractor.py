"""Find managed media keys referenced by an editor document.

Documents are arbitrary JSON trees (TipTap-like node/mark/attrs nesting). The
walk is schema-agnostic: every string anywhere in the tree is a candidate, so
node kinds added to the editor later are covered without code changes. Values
under the configured media-bearing fields (``src``, ``href`` by default) are
additionally split into whitespace-separated tokens so ``srcset``-style values
resolve too.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any
from urllib.parse import unquote

from ebook_media.core.config import settings

DEFAULT_MEDIA_FIELDS: tuple[str, ...] = ("src", "href")


def _normalized_base(cdn_base: str) -> str:
    base = (cdn_base or "").strip().rstrip("/")
    return f"{base}/" if base else ""


def media_key_from_url(value: str, *, cdn_base: str, allowed_prefix: str = "") -> str | None:
    """Return the storage key behind a CDN URL, or None when the URL is not managed."""
    base = _normalized_base(cdn_base)
    candidate = (value or "").strip()
    if not base or not candidate.startswith(base):
        return None
    # Raw URLs never contain whitespace; such strings are prose or srcset lists.
    if any(ch.isspace() for ch in candidate):
        return None
    remainder = candidate[len(base) :]
    path = remainder.partition("#")[0].partition("?")[0]
    key = unquote(path).lstrip("/")
    if not key:
        return None
    if allowed_prefix and not key.startswith(allowed_prefix):
        return None
    return key


def _maybe_decode_json(value: str | bytes | bytearray) -> Any:
    if isinstance(value, (bytes, bytearray)):
        try:
            value = bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return None
    text = value.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _iter_candidate_strings(content: Any, media_fields: frozenset[str]) -> Iterator[str]:
    # Explicit stack: editor documents nest deeply enough to trouble recursion.
    stack: list[Any] = [content]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            for field, child in node.items():
                if field in media_fields and isinstance(child, str):
                    yield from child.split()
                stack.append(child)
        elif isinstance(node, (list, tuple)):
            stack.extend(node)
        elif isinstance(node, str):
            yield node
            nested = _maybe_decode_json(node)
            if nested is not None:
                stack.append(nested)
        elif isinstance(node, (bytes, bytearray)):
            nested = _maybe_decode_json(node)
            if nested is not None:
                stack.append(nested)


def extract_media_keys(
    content: Any,
    cdn_base: str,
    allowed_prefix: str,
    media_fields: Iterable[str] = DEFAULT_MEDIA_FIELDS,
) -> set[str]:
    """Distinct storage keys under ``allowed_prefix`` referenced through ``cdn_base`` URLs.

    Pure function; output order carries no meaning.
    """
    if not _normalized_base(cdn_base):
        return set()
    fields = frozenset(str(field) for field in media_fields if field)
    keys: set[str] = set()
    for candidate in _iter_candidate_strings(content, fields):
        key = media_key_from_url(candidate, cdn_base=cdn_base, allowed_prefix=allowed_prefix)
        if key is not None:
            keys.add(key)
    return keys


def extract_configured_media_keys(content: Any) -> set[str]:
    return extract_media_keys(
        content,
        settings.assets_cdn_base_url,
        settings.media_key_prefix,
        media_fields=settings.media_fields,
    )
