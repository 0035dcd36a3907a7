"""Structured JSON logging on top of Loguru.

Every record carries the service identity, the active OpenTelemetry span ids
and whatever context was bound with ``logger.bind``. Square tokens, webhook
signatures and SMTP/Twilio credentials are masked before anything is written.
"""

from __future__ import annotations

import inspect
import json
import logging
import sys
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace

REDACTED = "***"

_SECRET_KEYS = frozenset(
    {
        "access_token",
        "auth_token",
        "authorization",
        "password",
        "secret",
        "signature",
        "signature_key",
        "webhook_secret",
        "x-square-hmacsha256-signature",
    }
)

# Attributes every stdlib LogRecord has; anything else came in through ``extra=``.
_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "twilio.http_client")


def redact_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``fields`` with secret-bearing keys masked, nested dicts included."""

    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if str(key).lower() in _SECRET_KEYS and value:
            cleaned[key] = REDACTED
        elif isinstance(value, Mapping):
            cleaned[key] = redact_fields(value)
        else:
            cleaned[key] = value
    return cleaned


class InterceptHandler(logging.Handler):
    """Forward uvicorn, httpx and SQLAlchemy records into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=depth, exception=record.exc_info).log(level, "{}", record.getMessage())


class JsonSink:
    """Loguru sink writing one JSON object per line to stdout."""

    def __init__(self, *, service_name: str, environment: str, version: str, stream: Any = None) -> None:
        self._identity = {"service": service_name, "environment": environment, "version": version}
        self._stream = stream

    def __call__(self, message: Any) -> None:
        stream = self._stream or sys.stdout
        stream.write(json.dumps(self.render(message.record), default=str) + "\n")
        stream.flush()

    def render(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **self._identity,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            entry["trace_id"] = format(span_context.trace_id, "032x")
            entry["span_id"] = format(span_context.span_id, "016x")

        extra = record["extra"]
        if extra:
            entry.update(redact_fields(extra))

        exception = record["exception"]
        if exception is not None and exception.value is not None:
            entry["error_type"] = type(exception.value).__name__
            entry["error"] = str(exception.value)
        return entry


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Replace Loguru's default handler with the JSON sink and capture stdlib logging."""

    logger.remove()
    logger.add(
        JsonSink(service_name=service_name, environment=environment, version=version),
        level=level.upper(),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
