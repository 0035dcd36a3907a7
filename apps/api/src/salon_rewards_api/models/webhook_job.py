"""Durable queue of webhook pipeline jobs."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class WebhookJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class WebhookJob(Base):
    """Queued stage work; (correlation_id, stage) is unique so redeliveries requeue the same row."""

    __tablename__ = "giftcard_jobs"
    __table_args__ = (
        UniqueConstraint("correlation_id", "stage", name="uq_giftcard_jobs_correlation_stage"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    correlation_id = Column(String(128), nullable=False, index=True)
    trigger_type = Column(String(64), nullable=False, default="unknown")
    stage = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=WebhookJobStatus.QUEUED.value, index=True)
    payload = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    scheduled_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    lock_owner = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["WebhookJob", "WebhookJobStatus"]
