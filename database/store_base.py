"""
Abstract Call Store — Interface for all storage backends.

Implementations:
  - SqlCallStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCallStore (dict-based, single-process, no persistence)

The store is the single source of truth for call sessions, the webhook
event log, the durable input-flow audit, and the notification queue.
Writes for one call are serialized by the callers (per-call locks);
reads are unserialized.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    CallSession, InputStageRecord, NotificationRecord, NotificationStatus,
    WebhookEvent,
)


class StorageError(Exception):
    """Transient persistence failure. Callers may retry the operation."""

    retryable = True


class BaseCallStore(ABC):
    """Interface that all call store backends must implement."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools). Optional."""

    async def close(self) -> None:
        """Release backend resources. Optional."""

    # ── Calls ─────────────────────────────────────────────────

    @abstractmethod
    async def create_call(self, session: CallSession) -> CallSession:
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallSession]:
        ...

    @abstractmethod
    async def upsert_call(self, call_id: str, **fields: Any) -> None:
        """Partial update; creates the row when it does not exist."""
        ...

    # ── Event log (append-only) ───────────────────────────────

    @abstractmethod
    async def append_event(self, call_id: str, status: str, payload: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        ...

    @abstractmethod
    async def record_event(self, call_id: str, status: str, payload: dict[str, Any],
                           updates: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        """
        Append an event and apply the matching call update as one write:
        either both land or neither does.
        """
        ...

    @abstractmethod
    async def get_events(self, call_id: str) -> list[WebhookEvent]:
        ...

    # ── Input flow audit ──────────────────────────────────────

    @abstractmethod
    async def persist_input_flow(self, call_id: str, stage_keys: list[str]) -> None:
        """Record the ordered stage list of a call; all stages start pending."""
        ...

    @abstractmethod
    async def record_input_attempt(self, call_id: str, stage_key: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def get_call_inputs(self, call_id: str) -> list[InputStageRecord]:
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def enqueue_notification(self, record: NotificationRecord) -> str:
        ...

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    async def fetch_pending_notifications(self, limit: int = 20) -> list[NotificationRecord]:
        """Pending records, highest priority first, then oldest first."""
        ...

    @abstractmethod
    async def update_notification(
        self,
        notification_id: str,
        status: NotificationStatus,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
        latency_ms: Optional[float] = None,
        count_failure: bool = False,
        permanent: bool = False,
    ) -> None:
        ...

    @abstractmethod
    async def fetch_failed_retryable(
        self,
        limit: int = 10,
        max_retries: int = 3,
        spacing_minutes: int = 10,
        now: datetime = None,
    ) -> list[NotificationRecord]:
        """
        Failed (or left retrying by an interrupted attempt), non-permanent
        records with retry_count < max_retries whose
        created_at + retry_count * spacing_minutes has passed.
        """
        ...

    @abstractmethod
    async def count_pending_notifications(self) -> int:
        ...

    # ── Delivery metrics ──────────────────────────────────────

    @abstractmethod
    async def record_notification_metric(self, notification_type: str, success: bool,
                                         latency_ms: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def get_notification_analytics(self, days: int = 7) -> dict[str, Any]:
        ...


def summarize_metrics(rows: list[dict[str, Any]], days: int) -> dict[str, Any]:
    """
    Fold daily per-type metric rows into an analytics summary.

    Each row: {"date", "notification_type", "total_count", "success_count",
    "failure_count", "avg_latency_ms"}.
    """
    by_type: dict[str, dict[str, Any]] = {}
    for row in rows:
        entry = by_type.setdefault(row["notification_type"], {
            "total": 0, "successful": 0, "failed": 0, "_latency_sum": 0.0,
        })
        entry["total"] += row["total_count"]
        entry["successful"] += row["success_count"]
        entry["failed"] += row["failure_count"]
        entry["_latency_sum"] += (row["avg_latency_ms"] or 0.0) * row["total_count"]

    total = sum(e["total"] for e in by_type.values())
    successful = sum(e["successful"] for e in by_type.values())
    for entry in by_type.values():
        latency_sum = entry.pop("_latency_sum")
        entry["avg_latency_ms"] = round(latency_sum / entry["total"], 1) if entry["total"] else 0.0

    return {
        "period_days": days,
        "total_notifications": total,
        "total_successful": successful,
        "total_failed": total - successful,
        "success_rate": round(successful / total * 100, 2) if total else 0.0,
        "by_type": by_type,
    }
