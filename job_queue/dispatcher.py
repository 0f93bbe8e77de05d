"""
Notification Dispatcher — Store-backed at-least-once delivery queue.

Topology:
  Reconciler / Hint Detector / Input Service
        │ enqueue (status=pending)
        ▼
  ┌────────────────────┐  drain loop (10s, batch 20, 200ms spacing)
  │ webhook_notifications│ ───────────────────────────────▶ DeliveryChannel
  └────────┬───────────┘                                        │
           │ failed, retry_count < 3,                          │
           │ created_at + retry_count*10min passed             │
           ▼                                                    │
     retry loop (5min, batch 10, 1s spacing) ──── retrying ────┘

retry_count counts failed delivery attempts, so a record gets at most
max_retries attempts in total. Permanent errors (and records that cannot
be rendered) are flagged permanent and never picked up again.

stop() signals both loops and waits for the batch in flight to finish.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from channels.base import DeliveryChannel, DeliveryError
from config.settings import NotificationConfig
from database.store_base import BaseCallStore
from models.schemas import (
    NotificationPriority, NotificationRecord, NotificationStatus, NotificationType,
)
from templates.renderer import NotificationRenderer

logger = structlog.get_logger()


class NotificationDispatcher:
    """
    Usage:
        dispatcher = NotificationDispatcher(store, channel)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: BaseCallStore,
        channel: DeliveryChannel,
        renderer: NotificationRenderer = None,
        config: NotificationConfig = None,
    ):
        self.store = store
        self.channel = channel
        self.renderer = renderer or NotificationRenderer()
        self.config = config or NotificationConfig()
        self._stats = {"processed": 0, "successful": 0, "failed": 0, "retried": 0, "permanent": 0}
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: list[asyncio.Task] = []

    # ── Producer side ─────────────────────────────────────────

    async def enqueue(self, record: NotificationRecord) -> str:
        notification_id = await self.store.enqueue_notification(record)
        logger.debug("notification_enqueued", notification_id=notification_id,
                     call_id=record.call_id, type=record.type.value,
                     priority=record.priority.value)
        return notification_id

    async def send_immediate(
        self,
        call_id: str,
        notification_type: NotificationType,
        destination: str,
        payload: dict[str, Any] = None,
    ) -> bool:
        """Persist an urgent notification and deliver it inline."""
        notification_id = await self.enqueue(NotificationRecord(
            call_id=call_id, type=notification_type, destination=destination,
            payload=payload or {}, priority=NotificationPriority.URGENT,
        ))
        record = await self.store.get_notification(notification_id)
        if record is None:
            return False
        return await self._deliver(record)

    # ── Batches ───────────────────────────────────────────────

    async def drain_pending(self) -> int:
        """Deliver one batch of pending records. Returns the number attempted."""
        batch = await self.store.fetch_pending_notifications(limit=self.config.batch_size)
        for i, record in enumerate(batch):
            await self._deliver(record)
            if i < len(batch) - 1 and self.config.inter_message_delay_seconds > 0:
                await asyncio.sleep(self.config.inter_message_delay_seconds)
        if batch:
            logger.info("notification_batch_drained", count=len(batch))
        return len(batch)

    async def retry_failed(self, now: datetime = None) -> int:
        """Re-attempt one batch of eligible failed records."""
        batch = await self.store.fetch_failed_retryable(
            limit=self.config.retry_batch_size,
            max_retries=self.config.max_retries,
            spacing_minutes=self.config.retry_spacing_minutes,
            now=now,
        )
        for i, record in enumerate(batch):
            await self.store.update_notification(record.id, NotificationStatus.RETRYING,
                                                 error=record.error)
            self._stats["retried"] += 1
            logger.info("notification_retrying", notification_id=record.id,
                        call_id=record.call_id, attempt=record.retry_count + 1)
            await self._deliver(record)
            if i < len(batch) - 1 and self.config.retry_delay_seconds > 0:
                await asyncio.sleep(self.config.retry_delay_seconds)
        return len(batch)

    async def _deliver(self, record: NotificationRecord) -> bool:
        self._stats["processed"] += 1

        text = self.renderer.render(record)
        if not text:
            await self._mark_failed(record, "render_failed", permanent=True)
            return False

        try:
            receipt = await self.channel.send(record.destination, text)
        except DeliveryError as e:
            await self._mark_failed(record, str(e), permanent=not e.retryable)
            return False
        except Exception as e:
            await self._mark_failed(record, str(e), permanent=False)
            return False

        await self.store.update_notification(
            record.id, NotificationStatus.SENT,
            message_id=receipt.message_id, latency_ms=receipt.latency_ms,
        )
        self._stats["successful"] += 1
        await self._record_metric(record, True, receipt.latency_ms)
        logger.info("notification_sent", notification_id=record.id, call_id=record.call_id,
                    type=record.type.value, message_id=receipt.message_id,
                    latency_ms=receipt.latency_ms)
        return True

    async def _mark_failed(self, record: NotificationRecord, error: str, permanent: bool) -> None:
        await self.store.update_notification(
            record.id, NotificationStatus.FAILED, error=error,
            count_failure=not permanent, permanent=permanent,
        )
        self._stats["failed"] += 1
        if permanent:
            self._stats["permanent"] += 1
        await self._record_metric(record, False, None)
        logger.warning("notification_failed", notification_id=record.id, call_id=record.call_id,
                       type=record.type.value, error=error, permanent=permanent,
                       failed_attempts=record.retry_count + (0 if permanent else 1))

    async def _record_metric(self, record: NotificationRecord, success: bool,
                             latency_ms: Optional[float]) -> None:
        try:
            await self.store.record_notification_metric(record.type.value, success, latency_ms)
        except Exception as e:
            logger.warning("notification_metric_failed", type=record.type.value, error=str(e))

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not all(t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop("drain", self.config.drain_interval_seconds,
                                           self.drain_pending)),
            asyncio.create_task(self._loop("retry", self.config.retry_interval_seconds,
                                           self.retry_failed)),
        ]
        logger.info("notification_dispatcher_started",
                    drain_interval=self.config.drain_interval_seconds,
                    retry_interval=self.config.retry_interval_seconds)

    async def stop(self) -> None:
        """Signal both loops and wait for in-flight batches to finish."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("notification_dispatcher_stopped", **self._stats)

    async def _loop(self, name: str, interval: float, batch) -> None:
        while not self._stop_event.is_set():
            try:
                await batch()
            except Exception as e:
                logger.error("notification_loop_error", loop=name, error=str(e))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ── Observability ─────────────────────────────────────────

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def health_check(self) -> dict[str, Any]:
        health: dict[str, Any] = {
            "status": "healthy",
            "running": self.running,
            "stats": self.stats,
            "channel": await self.channel.health_check(),
        }
        try:
            health["pending"] = await self.store.count_pending_notifications()
            health["analytics"] = await self.store.get_notification_analytics(days=7)
        except Exception as e:
            health["status"] = "degraded"
            health["error"] = str(e)
        if health["channel"].get("circuit_breaker", {}).get("state") == "open":
            health["status"] = "degraded"
        return health
