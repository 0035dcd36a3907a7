"""Celery task modules for the rewards service."""

# Import submodules so Celery autodiscovery registers tasks.
from . import webhook_jobs as _webhook_jobs  # noqa: F401

__all__ = ["_webhook_jobs"]
