"""
InMemoryCallStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlCallStore
  - Safe under a single asyncio event loop
  - All data lost on process restart

Returned models are copies; mutate the store only through its methods.
"""
from __future__ import annotations

import itertools
import structlog
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import BaseCallStore, summarize_metrics
from models.schemas import (
    CallSession, InputStageRecord, NotificationRecord, NotificationStatus,
    WebhookEvent, utcnow,
)

logger = structlog.get_logger()

# a record left "retrying" by an interrupted attempt is picked up again
_RETRY_STATUSES = (NotificationStatus.FAILED, NotificationStatus.RETRYING)


class InMemoryCallStore(BaseCallStore):
    """Full-featured in-memory store with the same interface as SqlCallStore."""

    def __init__(self):
        self._calls: dict[str, CallSession] = {}                        # call_id → session
        self._events: dict[str, list[WebhookEvent]] = defaultdict(list)  # call_id → [events]
        self._inputs: dict[str, dict[str, InputStageRecord]] = {}      # call_id → {stage_key → record}
        self._notifications: dict[str, NotificationRecord] = {}        # id → record
        self._metrics: dict[tuple[str, str], dict[str, Any]] = {}      # (date, type) → metric row
        self._ids = itertools.count(1)
        logger.info("inmemory_store_initialized")

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, session: CallSession) -> CallSession:
        self._calls[session.call_id] = session.model_copy(deep=True)
        return session

    async def get_call(self, call_id: str) -> Optional[CallSession]:
        session = self._calls.get(call_id)
        return session.model_copy(deep=True) if session else None

    async def upsert_call(self, call_id: str, **fields: Any) -> None:
        existing = self._calls.get(call_id)
        data = existing.model_dump() if existing else {"call_id": call_id}
        data.update(fields)
        self._calls[call_id] = CallSession.model_validate(data)

    # ── Event log ─────────────────────────────────────────

    async def append_event(self, call_id: str, status: str, payload: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        event = WebhookEvent(
            call_id=call_id, status=status, payload=dict(payload or {}),
            received_at=received_at or utcnow(),
        )
        self._events[call_id].append(event)
        return event

    async def record_event(self, call_id: str, status: str, payload: dict[str, Any],
                           updates: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        await self.upsert_call(call_id, **updates)
        return await self.append_event(call_id, status, payload, received_at=received_at)

    async def get_events(self, call_id: str) -> list[WebhookEvent]:
        return [e.model_copy(deep=True) for e in self._events.get(call_id, [])]

    # ── Input flow audit ──────────────────────────────────

    async def persist_input_flow(self, call_id: str, stage_keys: list[str]) -> None:
        self._inputs[call_id] = {
            key: InputStageRecord(call_id=call_id, stage_key=key, position=i)
            for i, key in enumerate(stage_keys)
        }

    async def record_input_attempt(self, call_id: str, stage_key: str, **fields: Any) -> None:
        stages = self._inputs.setdefault(call_id, {})
        existing = stages.get(stage_key)
        data = existing.model_dump() if existing else {
            "call_id": call_id, "stage_key": stage_key, "position": len(stages),
        }
        data.update(fields)
        data["updated_at"] = utcnow()
        stages[stage_key] = InputStageRecord.model_validate(data)

    async def get_call_inputs(self, call_id: str) -> list[InputStageRecord]:
        stages = self._inputs.get(call_id, {})
        return sorted((r.model_copy() for r in stages.values()), key=lambda r: r.position)

    # ── Notifications ─────────────────────────────────────

    async def enqueue_notification(self, record: NotificationRecord) -> str:
        stored = record.model_copy(deep=True)
        stored.id = str(next(self._ids))
        stored.status = NotificationStatus.PENDING
        self._notifications[stored.id] = stored
        return stored.id

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        record = self._notifications.get(notification_id)
        return record.model_copy(deep=True) if record else None

    async def fetch_pending_notifications(self, limit: int = 20) -> list[NotificationRecord]:
        pending = [
            r for r in self._notifications.values()
            if r.status == NotificationStatus.PENDING
        ]
        pending.sort(key=lambda r: (r.priority_rank, r.created_at, int(r.id)))
        return [r.model_copy(deep=True) for r in pending[:limit]]

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
        record = self._notifications.get(notification_id)
        if not record:
            logger.warning("notification_not_found", notification_id=notification_id)
            return
        record.status = status
        record.error = error
        if status == NotificationStatus.SENT:
            record.sent_at = utcnow()
            record.message_id = message_id
            record.latency_ms = latency_ms
        if count_failure:
            record.retry_count += 1
        if permanent:
            record.permanent = True

    async def fetch_failed_retryable(
        self,
        limit: int = 10,
        max_retries: int = 3,
        spacing_minutes: int = 10,
        now: datetime = None,
    ) -> list[NotificationRecord]:
        now = now or utcnow()
        eligible = [
            r for r in self._notifications.values()
            if r.status in _RETRY_STATUSES
            and not r.permanent
            and r.retry_count < max_retries
            and r.created_at + timedelta(minutes=r.retry_count * spacing_minutes) <= now
        ]
        eligible.sort(key=lambda r: (r.priority_rank, r.created_at, int(r.id)))
        return [r.model_copy(deep=True) for r in eligible[:limit]]

    async def count_pending_notifications(self) -> int:
        return sum(
            1 for r in self._notifications.values()
            if r.status in (NotificationStatus.PENDING, NotificationStatus.RETRYING)
        )

    # ── Delivery metrics ──────────────────────────────────

    async def record_notification_metric(self, notification_type: str, success: bool,
                                         latency_ms: Optional[float] = None) -> None:
        today = utcnow().date().isoformat()
        row = self._metrics.setdefault((today, notification_type), {
            "date": today, "notification_type": notification_type,
            "total_count": 0, "success_count": 0, "failure_count": 0,
            "avg_latency_ms": 0.0,
        })
        total = row["total_count"] + 1
        row["avg_latency_ms"] = (row["avg_latency_ms"] * row["total_count"] + (latency_ms or 0.0)) / total
        row["total_count"] = total
        row["success_count" if success else "failure_count"] += 1

    async def get_notification_analytics(self, days: int = 7) -> dict[str, Any]:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).date().isoformat()
        rows = [dict(r) for (date, _), r in self._metrics.items() if date >= cutoff]
        return summarize_metrics(rows, days)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "calls": len(self._calls),
            "events": sum(len(v) for v in self._events.values()),
            "input_flows": len(self._inputs),
            "notifications": len(self._notifications),
        }
