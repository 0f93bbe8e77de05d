"""
Webhook Reconciler — Idempotent provider status ingestion.

Flow (per event, under a per-call lock):
  dedup check (signature of call_id + raw status + 5s bucket)
    → load CallSession (unknown call → skipped)
    → terminal? compute CallOutcome
    → one store write: WebhookEvent (append-only audit) together with the
      canonical/provider status, answered-by and outcome
    → terminal? clear per-call memory
  then (isolated, never fails the ingest):
    → hint detector, status/outcome notifications

A terminal CallSession is never changed again. Late events for it are
appended to the event log and otherwise ignored.

Storage failures propagate as StorageError from ingest(); the signature is
forgotten first so the provider's retransmission gets processed.
process_webhook() is the provider-facing boundary and never raises.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from core.dedup import EventDeduplicator
from core.status import canonicalize_status, classify_answered_by
from database.store_base import BaseCallStore, StorageError
from models.schemas import (
    AnsweredBy, CallOutcome, CallSession, CallStatus, NotificationPriority,
    NotificationRecord, NotificationType, as_utc, utcnow,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


_STATUS_NOTIFICATIONS: dict[str, NotificationType] = {
    CallStatus.INITIATED.value: NotificationType.CALL_INITIATED,
    CallStatus.RINGING.value: NotificationType.CALL_RINGING,
    CallStatus.ANSWERED.value: NotificationType.CALL_ANSWERED,
    CallStatus.IN_PROGRESS.value: NotificationType.CALL_IN_PROGRESS,
    CallStatus.COMPLETED.value: NotificationType.CALL_COMPLETED,
    CallStatus.BUSY.value: NotificationType.CALL_BUSY,
    CallStatus.NO_ANSWER.value: NotificationType.CALL_NO_ANSWER,
    CallStatus.CANCELED.value: NotificationType.CALL_CANCELED,
    CallStatus.FAILED.value: NotificationType.CALL_FAILED,
}

_TERMINAL_REASONS = {
    CallStatus.BUSY.value: "busy",
    CallStatus.NO_ANSWER.value: "no_answer",
    CallStatus.CANCELED.value: "user_canceled",
}


@dataclass
class ReconcileResult:
    accepted: bool
    canonical_status: str
    is_terminal: bool
    duplicate: bool = False
    outcome: Optional[CallOutcome] = None
    reason: Optional[str] = None      # why an event was not applied


class WebhookReconciler:
    """
    Turns raw provider status callbacks into canonical call state.

    Collaborators are optional: without a hint detector or input engine the
    reconciler still persists state and enqueues notifications.
    """

    def __init__(
        self,
        store: BaseCallStore,
        dedup: EventDeduplicator = None,
        hints=None,
        input_engine=None,
        notify: bool = True,
    ):
        self.store = store
        self.dedup = dedup or EventDeduplicator()
        self.hints = hints
        self.input_engine = input_engine
        self.notify = notify
        self._locks = KeyedLock()

    # ── Ingest ────────────────────────────────────────────────

    async def ingest(
        self,
        call_id: str,
        raw_status: str,
        payload: dict[str, Any] = None,
        now: datetime = None,
    ) -> ReconcileResult:
        payload = payload or {}
        now = now or utcnow()
        mapping = canonicalize_status(raw_status)
        answered_by = classify_answered_by(payload.get("AnsweredBy") or payload.get("answered_by"))

        async with self._locks.hold(call_id):
            is_dup, signature = self.dedup.check_and_mark(call_id, raw_status, now)
            if is_dup:
                logger.info("webhook_duplicate", call_id=call_id, status=mapping.status)
                return ReconcileResult(
                    accepted=False, duplicate=True, reason="duplicate",
                    canonical_status=mapping.status, is_terminal=mapping.is_terminal,
                )

            try:
                call = await self.store.get_call(call_id)
                if call is None:
                    logger.warning("webhook_call_not_found", call_id=call_id, status=mapping.status)
                    return ReconcileResult(
                        accepted=False, reason="call_not_found",
                        canonical_status=mapping.status, is_terminal=mapping.is_terminal,
                    )

                if call.is_terminal:
                    await self.store.append_event(call_id, mapping.status, payload, received_at=now)
                    logger.info("webhook_after_terminal", call_id=call_id,
                                current=call.status, received=mapping.status)
                    return ReconcileResult(
                        accepted=False, reason="already_terminal",
                        canonical_status=call.status, is_terminal=True,
                    )

                fields: dict[str, Any] = {
                    "status": mapping.status,
                    "provider_status": raw_status or "",
                }
                if answered_by != AnsweredBy.UNKNOWN:
                    fields["answered_by"] = answered_by

                outcome = None
                if mapping.is_terminal:
                    outcome = await self._compute_outcome(call, mapping.status, payload, now)
                    fields.update(
                        outcome=outcome,
                        ended_at=now,
                        duration=outcome.duration,
                        recording_available=call.recording_available or bool(payload.get("RecordingUrl")),
                        transcript_available=call.transcript_available or bool(payload.get("TranscriptionText")),
                    )

                await self.store.record_event(call_id, mapping.status, payload, fields,
                                              received_at=now)

            except StorageError:
                self.dedup.forget(signature)
                logger.error("webhook_storage_failed", call_id=call_id, status=mapping.status)
                raise

            logger.info("webhook_accepted", call_id=call_id, status=mapping.status,
                        raw_status=raw_status, recognized=mapping.recognized,
                        terminal=mapping.is_terminal)

            await self._after_accept(call, mapping.status, answered_by, outcome, payload)

        return ReconcileResult(
            accepted=True, canonical_status=mapping.status,
            is_terminal=mapping.is_terminal, outcome=outcome,
        )

    async def record_answered_by(self, call_id: str, answered_by: Any) -> AnsweredBy:
        """Apply an asynchronous answering-machine detection result."""
        classified = classify_answered_by(answered_by)
        async with self._locks.hold(call_id):
            call = await self.store.get_call(call_id)
            if call is None:
                logger.warning("amd_call_not_found", call_id=call_id)
                return classified
            if not call.is_terminal and classified != AnsweredBy.UNKNOWN:
                await self.store.upsert_call(call_id, answered_by=classified)
            if self.hints is not None and not call.is_terminal:
                try:
                    await self.hints.on_answered_by(call_id, classified)
                except Exception as e:
                    logger.error("hint_update_failed", call_id=call_id, error=str(e))
        return classified

    # ── Outcome ───────────────────────────────────────────────

    async def _compute_outcome(
        self,
        call: CallSession,
        status: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> CallOutcome:
        duration = max(0, round((now - as_utc(call.started_at)).total_seconds()))

        if status == CallStatus.COMPLETED.value:
            inputs = await self.store.get_call_inputs(call.call_id)
            unconfirmed = [i.stage_key for i in inputs if not i.confirmed]
            if unconfirmed:
                logger.info("outcome_inputs_unconfirmed", call_id=call.call_id, stages=unconfirmed)
            success = not unconfirmed
            reason = "completed" if success else "input_validation_failed"
        elif status == CallStatus.FAILED.value:
            success = False
            reason = payload.get("reason") or payload.get("ErrorMessage") or "connection_failed"
        else:
            success = False
            reason = _TERMINAL_REASONS.get(status, status)

        return CallOutcome(
            success=success, final_status=status, reason=reason,
            duration=duration, completed_at=now,
        )

    # ── Side effects (isolated) ───────────────────────────────

    async def _after_accept(
        self,
        call: CallSession,
        status: str,
        answered_by: AnsweredBy,
        outcome: Optional[CallOutcome],
        payload: dict[str, Any],
    ) -> None:
        if self.hints is not None:
            try:
                await self.hints.on_status(call.call_id, status, answered_by)
            except Exception as e:
                logger.error("hint_update_failed", call_id=call.call_id, error=str(e))

        if self.notify:
            await self._enqueue_status_notification(call, status, answered_by, outcome, payload)

        if outcome is not None:
            if self.input_engine is not None:
                self.input_engine.clear(call.call_id)
            if self.hints is not None:
                self.hints.discard(call.call_id)

    async def _enqueue_status_notification(
        self,
        call: CallSession,
        status: str,
        answered_by: AnsweredBy,
        outcome: Optional[CallOutcome],
        payload: dict[str, Any],
    ) -> None:
        notification_type = _STATUS_NOTIFICATIONS.get(status)
        if notification_type is None:
            return
        if not call.destination:
            logger.info("notification_skipped_no_destination", call_id=call.call_id, status=status)
            return

        body: dict[str, Any] = {"status": status}
        if answered_by != AnsweredBy.UNKNOWN:
            body["answered_by"] = answered_by.value
        priority = NotificationPriority.NORMAL
        if outcome is not None:
            body["outcome"] = outcome.model_dump(mode="json")
            priority = NotificationPriority.HIGH
        if payload.get("CallDuration"):
            body["provider_duration"] = payload["CallDuration"]

        try:
            notification_id = await self.store.enqueue_notification(NotificationRecord(
                call_id=call.call_id,
                type=notification_type,
                destination=call.destination,
                payload=body,
                priority=priority,
            ))
            logger.debug("status_notification_enqueued", call_id=call.call_id,
                         type=notification_type.value, notification_id=notification_id)
        except Exception as e:
            logger.error("status_notification_failed", call_id=call.call_id,
                         type=notification_type.value, error=str(e))

    # ── Provider boundary ─────────────────────────────────────

    async def process_webhook(self, call_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Provider-facing entry point. Always acknowledges so the provider
        does not retry; errors are reported in the body, never raised.
        """
        payload = payload or {}
        raw_status = payload.get("CallStatus") or payload.get("status") or ""
        try:
            if not call_id or not raw_status:
                return {"success": True, "error": "missing call id or status"}
            result = await self.ingest(call_id, raw_status, payload)
        except Exception as e:
            logger.error("webhook_processing_error", call_id=call_id, error=str(e))
            return {"success": True, "error": str(e)}

        response: dict[str, Any] = {"success": True, "status": result.canonical_status}
        if result.duplicate:
            response["duplicate"] = True
        elif result.reason == "call_not_found":
            response["call_not_found"] = True
        elif result.reason:
            response["ignored"] = result.reason
        if result.outcome is not None:
            response["outcome"] = result.outcome.model_dump(mode="json")
        return response
