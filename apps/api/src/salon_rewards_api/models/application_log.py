"""Persisted structured log entries."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from salon_rewards_api.db.base import Base


class ApplicationLog(Base):
    __tablename__ = "application_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    log_type = Column(String(64), nullable=False, index=True)
    log_id = Column(String(128), nullable=True, index=True)
    status = Column(String(32), nullable=True)
    organization_id = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["ApplicationLog"]
