"""Application log persistence."""

from .application_log import ApplicationLogWriter  # noqa: F401

__all__ = ["ApplicationLogWriter"]
