"""Workflow run tracking and idempotency helpers."""

from .availability import SessionFactory, TableAvailability, is_missing_relation_error, open_session  # noqa: F401
from .idempotency import (  # noqa: F401
    build_correlation_id,
    build_idempotency_key,
    build_stage_key,
    hash_for,
    safe_part,
)
from .tracker import MAX_ERROR_LENGTH, RunTracker, truncate_error  # noqa: F401

__all__ = [
    "MAX_ERROR_LENGTH",
    "RunTracker",
    "SessionFactory",
    "TableAvailability",
    "build_correlation_id",
    "build_idempotency_key",
    "build_stage_key",
    "hash_for",
    "is_missing_relation_error",
    "open_session",
    "safe_part",
    "truncate_error",
]
