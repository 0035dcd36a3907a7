"""In-memory counters for Square webhook intake and job processing."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class WebhookEventLog:
    last_event_at: datetime | None = None
    last_event_type: str | None = None
    last_event_id: str | None = None
    last_failure_at: datetime | None = None
    last_failure_type: str | None = None
    last_failure_reason: str | None = None
    last_signature_failure_at: datetime | None = None


@dataclass
class WebhookObservabilitySnapshot:
    totals: Dict[str, Dict[str, int]]
    signature_failures: int
    events: WebhookEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "signature_failures": self.signature_failures,
            "events": {
                "last_event_at": _iso(self.events.last_event_at),
                "last_event_type": self.events.last_event_type,
                "last_event_id": self.events.last_event_id,
                "last_failure_at": _iso(self.events.last_failure_at),
                "last_failure_type": self.events.last_failure_type,
                "last_failure_reason": self.events.last_failure_reason,
                "last_signature_failure_at": _iso(self.events.last_signature_failure_at),
            },
        }


_BUCKETS = ("received", "processed", "queued", "failed", "ignored")


@dataclass
class WebhookObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _totals: Dict[str, Counter] = field(default_factory=lambda: {bucket: Counter() for bucket in _BUCKETS})
    _signature_failures: int = 0
    _events: WebhookEventLog = field(default_factory=WebhookEventLog)

    def record_received(self, event_type: str, event_id: str | None) -> None:
        with self._lock:
            self._totals["received"][event_type] += 1
            self._events.last_event_at = _utcnow()
            self._events.last_event_type = event_type
            self._events.last_event_id = event_id

    def record_processed(self, event_type: str) -> None:
        with self._lock:
            self._totals["processed"][event_type] += 1

    def record_queued(self, event_type: str) -> None:
        with self._lock:
            self._totals["queued"][event_type] += 1

    def record_ignored(self, event_type: str) -> None:
        with self._lock:
            self._totals["ignored"][event_type] += 1

    def record_failure(self, event_type: str, reason: str | None) -> None:
        with self._lock:
            self._totals["failed"][event_type] += 1
            self._events.last_failure_at = _utcnow()
            self._events.last_failure_type = event_type
            self._events.last_failure_reason = reason

    def record_signature_failure(self) -> None:
        with self._lock:
            self._signature_failures += 1
            self._events.last_signature_failure_at = _utcnow()

    def snapshot(self) -> WebhookObservabilitySnapshot:
        with self._lock:
            totals = {bucket: dict(counter) for bucket, counter in self._totals.items()}
            events = WebhookEventLog(**vars(self._events))
            return WebhookObservabilitySnapshot(
                totals=totals,
                signature_failures=self._signature_failures,
                events=events,
            )

    def reset(self) -> None:
        with self._lock:
            for counter in self._totals.values():
                counter.clear()
            self._signature_failures = 0
            self._events = WebhookEventLog()


_WEBHOOK_STORE = WebhookObservabilityStore()


def get_webhook_store() -> WebhookObservabilityStore:
    return _WEBHOOK_STORE


__all__ = ["WebhookObservabilityStore", "WebhookObservabilitySnapshot", "get_webhook_store"]
