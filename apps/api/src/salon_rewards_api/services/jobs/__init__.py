"""Webhook job queue exports."""

from .queue import (  # noqa: F401
    BASE_BACKOFF_MS,
    MAX_BACKOFF_MS,
    QueuedJob,
    WebhookJobQueue,
    compute_backoff,
)

__all__ = ["BASE_BACKOFF_MS", "MAX_BACKOFF_MS", "QueuedJob", "WebhookJobQueue", "compute_backoff"]
