"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - call_events is append-only; nothing in the code base updates or deletes it.
  - Notification ids are autoincrement integers exposed as strings.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, DateTime, Boolean, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Calls
# ──────────────────────────────────────────────────────────────

class CallRow(Base):
    __tablename__ = "calls"

    call_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="initiated")
    provider_status: Mapped[str] = mapped_column(String(64), default="")
    answered_by: Mapped[str] = mapped_column(String(16), default="unknown")
    destination: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provider: Mapped[str] = mapped_column(String(32), default="twilio")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    final_outcome: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    recording_available: Mapped[bool] = mapped_column(Boolean, default=False)
    transcript_available: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_calls_status", "status"),
    )


class CallEventRow(Base):
    __tablename__ = "call_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(64), ForeignKey("calls.call_id"), nullable=False)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_call_events_call", "call_id", "received_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Input collection audit
# ──────────────────────────────────────────────────────────────

class InputStageRow(Base):
    __tablename__ = "call_input_stages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage_key: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    masked_digits: Mapped[str] = mapped_column(String(64), default="")
    digits_length: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("call_id", "stage_key", name="uq_input_stage"),
    )


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class NotificationRow(Base):
    __tablename__ = "webhook_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    destination: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    priority: Mapped[str] = mapped_column(String(16), default="normal")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    permanent: Mapped[bool] = mapped_column(Boolean, default=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notifications_status", "status"),
        Index("ix_notifications_call", "call_id"),
        Index("ix_notifications_created", "created_at"),
    )


class NotificationMetricRow(Base):
    __tablename__ = "notification_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_latency_ms: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (
        UniqueConstraint("date", "notification_type", name="uq_metric_day_type"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date, "notification_type": self.notification_type,
            "total_count": self.total_count, "success_count": self.success_count,
            "failure_count": self.failure_count, "avg_latency_ms": self.avg_latency_ms,
        }
