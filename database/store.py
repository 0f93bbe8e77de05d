"""
SqlCallStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - Priority ordering uses a CASE expression instead of a PG array_position.
  - Retry eligibility (created_at + retry_count * spacing) avoids interval
    arithmetic, which differs across dialects: one created_at cutoff is
    bound per retry_count value instead.
  - SQLite drops tzinfo on DateTime columns, so reads pass through as_utc().

Every SQLAlchemy failure is re-raised as StorageError so callers can treat
persistence problems as retryable without knowing the backend.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import and_, or_, select, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from database.models import (
    Base, CallRow, CallEventRow, InputStageRow, NotificationRow, NotificationMetricRow,
)
from database.session import create_engine_for, get_session, make_session_factory
from database.store_base import BaseCallStore, StorageError, summarize_metrics
from models.schemas import (
    CallOutcome, CallSession, InputStageRecord, NotificationRecord,
    NotificationStatus, WebhookEvent, PRIORITY_RANK, as_utc, utcnow,
)

logger = structlog.get_logger()

_PRIORITY_ORDER = case(PRIORITY_RANK, value=NotificationRow.priority, else_=99)

# CallSession field → CallRow attribute, where they differ
_CALL_COLUMNS = {"outcome": "final_outcome", "metadata": "metadata_"}


class SqlCallStore(BaseCallStore):
    """
    Persistent call store backed by any SQLAlchemy-supported database.
    Uses the global engine from settings unless a URL is given.
    """

    def __init__(self, url: str = None, echo: bool = False):
        self._engine: Optional[AsyncEngine] = None
        self._factory: Optional[async_sessionmaker[AsyncSession]] = None
        if url:
            self._engine = create_engine_for(url, echo=echo)
            self._factory = make_session_factory(self._engine)

    async def initialize(self) -> None:
        """Create tables on this store's own engine (no-op for the global one)."""
        if self._engine is not None:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            if self._factory is None:
                async with get_session() as db:
                    yield db
                return
            async with self._factory() as db:
                try:
                    yield db
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except SQLAlchemyError as e:
            logger.error("storage_error", error=str(e))
            raise StorageError(str(e)) from e

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, session: CallSession) -> CallSession:
        async with self._session() as db:
            row = CallRow(call_id=session.call_id)
            self._apply_call_fields(row, session.model_dump())
            db.add(row)
        return session

    async def get_call(self, call_id: str) -> Optional[CallSession]:
        async with self._session() as db:
            row = await db.get(CallRow, call_id)
            return self._row_to_call(row) if row else None

    async def upsert_call(self, call_id: str, **fields: Any) -> None:
        async with self._session() as db:
            row = await db.get(CallRow, call_id)
            if row is None:
                row = CallRow(call_id=call_id)
                db.add(row)
            self._apply_call_fields(row, fields)

    @staticmethod
    def _apply_call_fields(row: CallRow, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            if name == "call_id":
                continue
            if name == "outcome" and value is not None:
                if isinstance(value, CallOutcome):
                    value = value.model_dump(mode="json")
                elif isinstance(value, dict):
                    value = CallOutcome.model_validate(value).model_dump(mode="json")
            if hasattr(value, "value"):  # enums
                value = value.value
            setattr(row, _CALL_COLUMNS.get(name, name), value)

    @staticmethod
    def _row_to_call(row: CallRow) -> CallSession:
        return CallSession(
            call_id=row.call_id,
            status=row.status,
            provider_status=row.provider_status or "",
            answered_by=row.answered_by or "unknown",
            destination=row.destination,
            provider=row.provider or "twilio",
            started_at=as_utc(row.started_at),
            ended_at=as_utc(row.ended_at) if row.ended_at else None,
            duration=row.duration,
            outcome=CallOutcome.model_validate(row.final_outcome) if row.final_outcome else None,
            recording_available=bool(row.recording_available),
            transcript_available=bool(row.transcript_available),
            metadata=row.metadata_ or {},
        )

    # ── Event log ─────────────────────────────────────────

    async def append_event(self, call_id: str, status: str, payload: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        event = WebhookEvent(
            call_id=call_id, status=status, payload=dict(payload or {}),
            received_at=received_at or utcnow(),
        )
        async with self._session() as db:
            db.add(self._event_row(event))
        return event

    async def record_event(self, call_id: str, status: str, payload: dict[str, Any],
                           updates: dict[str, Any],
                           received_at: datetime = None) -> WebhookEvent:
        event = WebhookEvent(
            call_id=call_id, status=status, payload=dict(payload or {}),
            received_at=received_at or utcnow(),
        )
        async with self._session() as db:
            row = await db.get(CallRow, call_id)
            if row is None:
                row = CallRow(call_id=call_id)
                db.add(row)
            self._apply_call_fields(row, updates)
            db.add(self._event_row(event))
        return event

    @staticmethod
    def _event_row(event: WebhookEvent) -> CallEventRow:
        return CallEventRow(
            id=event.id, call_id=event.call_id, status=event.status,
            payload=event.payload, received_at=event.received_at,
        )

    async def get_events(self, call_id: str) -> list[WebhookEvent]:
        async with self._session() as db:
            stmt = (
                select(CallEventRow)
                .where(CallEventRow.call_id == call_id)
                .order_by(CallEventRow.received_at)
            )
            result = await db.execute(stmt)
            return [
                WebhookEvent(
                    id=row.id, call_id=row.call_id, status=row.status,
                    payload=row.payload or {}, received_at=as_utc(row.received_at),
                )
                for row in result.scalars()
            ]

    # ── Input flow audit ──────────────────────────────────

    async def persist_input_flow(self, call_id: str, stage_keys: list[str]) -> None:
        async with self._session() as db:
            existing = await db.execute(
                select(InputStageRow).where(InputStageRow.call_id == call_id)
            )
            for row in existing.scalars():
                await db.delete(row)
            await db.flush()
            for position, key in enumerate(stage_keys):
                db.add(InputStageRow(call_id=call_id, stage_key=key, position=position))

    async def record_input_attempt(self, call_id: str, stage_key: str, **fields: Any) -> None:
        async with self._session() as db:
            stmt = select(InputStageRow).where(
                InputStageRow.call_id == call_id,
                InputStageRow.stage_key == stage_key,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                count = await db.scalar(
                    select(func.count()).select_from(InputStageRow)
                    .where(InputStageRow.call_id == call_id)
                )
                row = InputStageRow(call_id=call_id, stage_key=stage_key, position=count or 0)
                db.add(row)
            for name, value in fields.items():
                if hasattr(value, "value"):
                    value = value.value
                setattr(row, name, value)

    async def get_call_inputs(self, call_id: str) -> list[InputStageRecord]:
        async with self._session() as db:
            stmt = (
                select(InputStageRow)
                .where(InputStageRow.call_id == call_id)
                .order_by(InputStageRow.position)
            )
            result = await db.execute(stmt)
            return [
                InputStageRecord(
                    call_id=row.call_id, stage_key=row.stage_key, position=row.position,
                    status=row.status, attempts=row.attempts or 0,
                    masked_digits=row.masked_digits or "",
                    digits_length=row.digits_length or 0,
                    last_error=row.last_error,
                    updated_at=as_utc(row.updated_at),
                )
                for row in result.scalars()
            ]

    # ── Notifications ─────────────────────────────────────

    async def enqueue_notification(self, record: NotificationRecord) -> str:
        async with self._session() as db:
            row = NotificationRow(
                call_id=record.call_id,
                notification_type=record.type.value,
                destination=record.destination,
                payload=record.payload,
                status=NotificationStatus.PENDING.value,
                priority=record.priority.value,
                retry_count=0,
                created_at=record.created_at,
            )
            db.add(row)
            await db.flush()
            return str(row.id)

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        async with self._session() as db:
            row = await db.get(NotificationRow, int(notification_id))
            return self._row_to_notification(row) if row else None

    async def fetch_pending_notifications(self, limit: int = 20) -> list[NotificationRecord]:
        async with self._session() as db:
            stmt = (
                select(NotificationRow)
                .where(NotificationRow.status == NotificationStatus.PENDING.value)
                .order_by(_PRIORITY_ORDER, NotificationRow.created_at, NotificationRow.id)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_notification(r) for r in result.scalars()]

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
        async with self._session() as db:
            row = await db.get(NotificationRow, int(notification_id))
            if row is None:
                logger.warning("notification_not_found", notification_id=notification_id)
                return
            row.status = status.value
            row.error_message = error
            if status == NotificationStatus.SENT:
                row.sent_at = utcnow()
                row.message_id = message_id
                row.latency_ms = latency_ms
            if count_failure:
                row.retry_count = (row.retry_count or 0) + 1
            if permanent:
                row.permanent = True

    async def fetch_failed_retryable(
        self,
        limit: int = 10,
        max_retries: int = 3,
        spacing_minutes: int = 10,
        now: datetime = None,
    ) -> list[NotificationRecord]:
        now = now or utcnow()
        if max_retries <= 0:
            return []
        # created_at + k * spacing <= now, spelled out once per retry_count value k
        due = or_(*(
            and_(
                NotificationRow.retry_count == k,
                NotificationRow.created_at <= now - timedelta(minutes=k * spacing_minutes),
            )
            for k in range(max_retries)
        ))
        async with self._session() as db:
            stmt = (
                select(NotificationRow)
                .where(
                    NotificationRow.status.in_([
                        NotificationStatus.FAILED.value, NotificationStatus.RETRYING.value,
                    ]),
                    NotificationRow.permanent.is_(False),
                    due,
                )
                .order_by(_PRIORITY_ORDER, NotificationRow.created_at, NotificationRow.id)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_notification(r) for r in result.scalars()]

    async def count_pending_notifications(self) -> int:
        async with self._session() as db:
            count = await db.scalar(
                select(func.count()).select_from(NotificationRow).where(
                    NotificationRow.status.in_([
                        NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value,
                    ])
                )
            )
            return count or 0

    @staticmethod
    def _row_to_notification(row: NotificationRow) -> NotificationRecord:
        return NotificationRecord(
            id=str(row.id),
            call_id=row.call_id,
            type=row.notification_type,
            destination=row.destination,
            payload=row.payload or {},
            status=row.status,
            priority=row.priority,
            error=row.error_message,
            retry_count=row.retry_count or 0,
            permanent=bool(row.permanent),
            message_id=row.message_id,
            latency_ms=row.latency_ms,
            created_at=as_utc(row.created_at),
            sent_at=as_utc(row.sent_at) if row.sent_at else None,
        )

    # ── Delivery metrics ──────────────────────────────────

    async def record_notification_metric(self, notification_type: str, success: bool,
                                         latency_ms: Optional[float] = None) -> None:
        today = utcnow().date().isoformat()
        async with self._session() as db:
            stmt = select(NotificationMetricRow).where(
                NotificationMetricRow.date == today,
                NotificationMetricRow.notification_type == notification_type,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = NotificationMetricRow(
                    date=today, notification_type=notification_type,
                    total_count=0, success_count=0, failure_count=0, avg_latency_ms=0.0,
                )
                db.add(row)
            total = row.total_count + 1
            row.avg_latency_ms = (row.avg_latency_ms * row.total_count + (latency_ms or 0.0)) / total
            row.total_count = total
            if success:
                row.success_count += 1
            else:
                row.failure_count += 1

    async def get_notification_analytics(self, days: int = 7) -> dict[str, Any]:
        cutoff = (utcnow() - timedelta(days=days)).date().isoformat()
        async with self._session() as db:
            stmt = select(NotificationMetricRow).where(NotificationMetricRow.date >= cutoff)
            result = await db.execute(stmt)
            rows = [r.to_dict() for r in result.scalars()]
        return summarize_metrics(rows, days)
