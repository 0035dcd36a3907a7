"""Background workers supporting async processing."""

from .webhook_jobs import WebhookJobWorker

__all__ = ["WebhookJobWorker"]
