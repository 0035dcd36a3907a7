"""Workflow run tracking model for webhook-driven gift card pipelines."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class WorkflowRunStatus(str, Enum):
    """Lifecycle states recorded on a workflow run."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class WorkflowRun(Base):
    """One row per correlation id; stage/status advance as the pipeline progresses."""

    __tablename__ = "giftcard_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    correlation_id = Column(String(128), nullable=False, unique=True, index=True)
    square_event_id = Column(String(128), nullable=True)
    square_event_type = Column(String(64), nullable=True)
    trigger_type = Column(String(64), nullable=False, default="unknown")
    resource_id = Column(String(128), nullable=True)
    stage = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False, default=WorkflowRunStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)
    resumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["WorkflowRun", "WorkflowRunStatus"]
