"""Deterministic correlation ids and Square idempotency keys."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable, Sequence

# Square rejects idempotency keys longer than 45 characters.
MAX_IDEMPOTENCY_KEY_LENGTH = 45
_MAX_PREFIX_LENGTH = 10
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9:_\-]")


def safe_part(value: Any, fallback: str = "na") -> str:
    """Stringify ``value`` and replace characters outside ``[A-Za-z0-9:_-]`` with ``-``."""

    if value is None:
        return fallback
    text = str(value).strip()
    if not text:
        return fallback
    return _UNSAFE_CHARS.sub("-", text)


def hash_for(parts: Iterable[Any]) -> str:
    raw = "::".join(str(part) for part in parts if part)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_correlation_id(trigger_type: str | None, event_id: str | None, resource_id: str | None) -> str:
    """Group every stage of one logical webhook event under a stable id."""

    type_part = safe_part(trigger_type, "event").lower()
    digest = hash_for([trigger_type, resource_id, event_id])
    return f"{type_part}:{digest[:24]}"


def build_idempotency_key(parts: Sequence[Any] | Any) -> str:
    """Join normalized parts with ``:``; overlong keys collapse to ``prefix:sha256``.

    The result is always at most 45 characters and identical for identical input.
    """

    if isinstance(parts, (list, tuple)):
        items = list(parts)
    else:
        items = [parts]
    normalized = [safe_part(part).lower() for part in items if part]
    joined = ":".join(normalized)
    if len(joined) <= MAX_IDEMPOTENCY_KEY_LENGTH:
        return joined

    digest = hash_for(normalized)
    prefix = (normalized[0] if normalized else "idemp")[:_MAX_PREFIX_LENGTH]
    hash_length = MAX_IDEMPOTENCY_KEY_LENGTH - len(prefix) - 1
    return f"{prefix}:{digest[:hash_length]}"


def build_stage_key(correlation_id: str | None, stage: str | None, action: str | None) -> str:
    return build_idempotency_key([correlation_id, stage or "stage", action or "op"])


__all__ = [
    "MAX_IDEMPOTENCY_KEY_LENGTH",
    "build_correlation_id",
    "build_idempotency_key",
    "build_stage_key",
    "hash_for",
    "safe_part",
]
