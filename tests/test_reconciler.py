"""
Tests for the webhook reconciler.

Covers:
  - idempotent ingest (dedup window, retransmissions)
  - terminal monotonicity and outcome computation
  - end-to-end call lifecycle with keypad input
  - storage failures and the provider-facing boundary
"""
import pytest
from unittest.mock import AsyncMock

from core.dedup import EventDeduplicator
from core.reconciler import WebhookReconciler
from database.store_base import StorageError
from models.schemas import AnsweredBy, NotificationPriority, NotificationType


async def _types(store):
    pending = await store.fetch_pending_notifications(limit=100)
    return [r.type for r in pending]


# ──────────────────────────────────────────────────────────────
#  Idempotency
# ──────────────────────────────────────────────────────────────

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_retransmission_in_window_is_duplicate(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        first = await reconciler.ingest("CA1", "ringing", {}, now=clock(1))
        second = await reconciler.ingest("CA1", "ringing", {}, now=clock(3))

        assert first.accepted is True
        assert second.accepted is False
        assert second.duplicate is True
        assert len(await store.get_events("CA1")) == 1
        assert (await _types(store)).count(NotificationType.CALL_RINGING) == 1

    @pytest.mark.asyncio
    async def test_same_status_in_next_bucket_is_new_event(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "ringing", {}, now=clock(1))
        again = await reconciler.ingest("CA1", "ringing", {}, now=clock(7))
        assert again.accepted is True
        assert len(await store.get_events("CA1")) == 2

    @pytest.mark.asyncio
    async def test_duplicate_terminal_computes_one_outcome(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        first = await reconciler.ingest("CA1", "busy", {}, now=clock(10))
        second = await reconciler.ingest("CA1", "busy", {}, now=clock(11))
        assert first.outcome is not None
        assert second.duplicate is True
        assert second.outcome is None
        assert (await _types(store)).count(NotificationType.CALL_BUSY) == 1

    @pytest.mark.asyncio
    async def test_unknown_call_is_skipped(self, reconciler, store, clock):
        result = await reconciler.ingest("CA404", "ringing", {}, now=clock(0))
        assert result.accepted is False
        assert result.reason == "call_not_found"
        assert await store.get_events("CA404") == []
        assert await store.get_call("CA404") is None

    @pytest.mark.asyncio
    async def test_unrecognized_status_is_recorded(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        result = await reconciler.ingest("CA1", "transferring", {}, now=clock(0))
        assert result.accepted is True
        call = await store.get_call("CA1")
        assert call.status == "transferring"
        assert call.provider_status == "transferring"
        assert await _types(store) == []


# ──────────────────────────────────────────────────────────────
#  Terminal states
# ──────────────────────────────────────────────────────────────

class TestTerminal:

    @pytest.mark.asyncio
    async def test_terminal_is_final(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "no-answer", {}, now=clock(30))
        late = await reconciler.ingest("CA1", "in-progress", {}, now=clock(40))

        assert late.accepted is False
        assert late.reason == "already_terminal"
        assert late.canonical_status == "no-answer"
        call = await store.get_call("CA1")
        assert call.status == "no-answer"
        assert call.outcome.reason == "no_answer"
        # late events are still kept for audit
        assert [e.status for e in await store.get_events("CA1")] == ["no-answer", "in-progress"]

    @pytest.mark.asyncio
    async def test_second_terminal_does_not_replace_outcome(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "completed", {}, now=clock(20))
        await reconciler.ingest("CA1", "failed", {}, now=clock(25))
        call = await store.get_call("CA1")
        assert call.status == "completed"
        assert call.outcome.success is True

    @pytest.mark.parametrize("raw,reason", [
        ("busy", "busy"),
        ("no_answer", "no_answer"),
        ("cancelled", "user_canceled"),
        ("failed", "connection_failed"),
    ])
    @pytest.mark.asyncio
    async def test_unsuccessful_reasons(self, reconciler, store, make_call, clock, raw, reason):
        await make_call("CA1")
        result = await reconciler.ingest("CA1", raw, {}, now=clock(12))
        assert result.outcome.success is False
        assert result.outcome.reason == reason
        assert result.outcome.duration == 12

    @pytest.mark.asyncio
    async def test_failed_reason_from_payload(self, reconciler, make_call, clock):
        await make_call("CA1")
        result = await reconciler.ingest("CA1", "failed", {"ErrorMessage": "invalid_number"}, now=clock(1))
        assert result.outcome.reason == "invalid_number"

    @pytest.mark.asyncio
    async def test_completed_with_failed_input_stage(self, reconciler, input_service, store,
                                                     make_call, account_and_pin, clock):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        await input_service.handle_digits("CA1", "123456")
        for _ in range(3):
            await input_service.handle_digits("CA1", "0000")

        result = await reconciler.ingest("CA1", "completed", {}, now=clock(60))
        assert result.outcome.success is False
        assert result.outcome.reason == "input_validation_failed"

    @pytest.mark.asyncio
    async def test_completed_with_unreached_stage(self, reconciler, input_service, make_call,
                                                  account_and_pin, clock):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        await input_service.handle_digits("CA1", "123456")

        result = await reconciler.ingest("CA1", "completed", {}, now=clock(60))
        assert result.outcome.reason == "input_validation_failed"

    @pytest.mark.asyncio
    async def test_terminal_clears_per_call_state(self, reconciler, engine, hints, input_service,
                                                  make_call, account_and_pin, clock):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        await reconciler.ingest("CA1", "answered", {"AnsweredBy": "human"}, now=clock(5))
        assert engine.get_state("CA1") is not None
        assert hints.get_state("CA1") is not None

        await reconciler.ingest("CA1", "completed", {}, now=clock(30))
        assert engine.get_state("CA1") is None
        assert hints.get_state("CA1") is None

    @pytest.mark.asyncio
    async def test_recording_flags(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "completed", {"RecordingUrl": "https://rec/1"}, now=clock(9))
        call = await store.get_call("CA1")
        assert call.recording_available is True
        assert call.transcript_available is False
        assert call.ended_at == clock(9)
        assert call.duration == 9


# ──────────────────────────────────────────────────────────────
#  End to end
# ──────────────────────────────────────────────────────────────

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_human_answered_call_with_inputs(self, reconciler, input_service, store,
                                                   make_call, account_and_pin, clock):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)

        await reconciler.ingest("CA1", "initiated", {}, now=clock(0))
        await reconciler.ingest("CA1", "ringing", {}, now=clock(6))
        await reconciler.ingest("CA1", "answered", {"AnsweredBy": "human"}, now=clock(12))
        await reconciler.ingest("CA1", "in-progress", {}, now=clock(18))
        await input_service.handle_digits("CA1", "123456")
        await input_service.handle_digits("CA1", "4321")
        result = await reconciler.ingest("CA1", "completed", {}, now=clock(45))

        assert result.outcome.success is True
        assert result.outcome.reason == "completed"
        assert result.outcome.duration == 45

        call = await store.get_call("CA1")
        assert call.answered_by == AnsweredBy.HUMAN
        assert call.outcome == result.outcome

        types = await _types(store)
        assert types.count(NotificationType.HINT_CALLER_LISTENING) == 1
        assert types.count(NotificationType.HINT_MACHINE_DETECTED) == 0
        assert types.count(NotificationType.CALL_COMPLETED) == 1
        assert types.count(NotificationType.INPUT_FLOW_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_outcome_notification_is_high_priority(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "ringing", {}, now=clock(1))
        await reconciler.ingest("CA1", "completed", {}, now=clock(20))
        pending = await store.fetch_pending_notifications()
        assert pending[0].type == NotificationType.CALL_COMPLETED
        assert pending[0].priority == NotificationPriority.HIGH
        assert pending[0].payload["outcome"]["duration"] == 20

    @pytest.mark.asyncio
    async def test_no_destination_no_notifications(self, reconciler, store, make_call, clock):
        await make_call("CA1", destination=None)
        await reconciler.ingest("CA1", "ringing", {}, now=clock(1))
        assert await store.count_pending_notifications() == 0

    @pytest.mark.asyncio
    async def test_amd_result_after_answer(self, reconciler, store, make_call, clock):
        await make_call("CA1")
        await reconciler.ingest("CA1", "in-progress", {}, now=clock(3))
        classified = await reconciler.record_answered_by("CA1", "machine_end_beep")

        assert classified == AnsweredBy.MACHINE
        assert (await store.get_call("CA1")).answered_by == AnsweredBy.MACHINE
        assert (await _types(store)).count(NotificationType.HINT_MACHINE_DETECTED) == 1


# ──────────────────────────────────────────────────────────────
#  Failures & provider boundary
# ──────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_storage_failure_allows_retransmission(self, store, make_call, clock):
        await make_call("CA1")
        reconciler = WebhookReconciler(store, EventDeduplicator())
        original = store.upsert_call
        store.upsert_call = AsyncMock(side_effect=StorageError("db down"))

        with pytest.raises(StorageError):
            await reconciler.ingest("CA1", "ringing", {}, now=clock(1))

        store.upsert_call = original
        retried = await reconciler.ingest("CA1", "ringing", {}, now=clock(2))
        assert retried.accepted is True
        assert (await store.get_call("CA1")).status == "ringing"
        assert len(await store.get_events("CA1")) == 1

    @pytest.mark.asyncio
    async def test_failed_call_update_leaves_no_event(self, store, make_call, clock):
        await make_call("CA1")
        reconciler = WebhookReconciler(store, EventDeduplicator())
        original = store.upsert_call
        failures = []

        async def upsert_failing_once(call_id, **fields):
            if not failures:
                failures.append(call_id)
                raise StorageError("connection reset")
            await original(call_id, **fields)

        store.upsert_call = upsert_failing_once

        with pytest.raises(StorageError):
            await reconciler.ingest("CA1", "completed", {}, now=clock(1))
        assert await store.get_events("CA1") == []

        retried = await reconciler.ingest("CA1", "completed", {}, now=clock(2))
        assert retried.accepted is True
        events = await store.get_events("CA1")
        assert [e.status for e in events] == ["completed"]
        assert (await store.get_call("CA1")).outcome is not None

    @pytest.mark.asyncio
    async def test_hint_failure_does_not_fail_ingest(self, store, make_call, clock):
        await make_call("CA1")
        hints = AsyncMock()
        hints.on_status.side_effect = RuntimeError("boom")
        hints.discard = lambda call_id: None
        reconciler = WebhookReconciler(store, hints=hints)

        result = await reconciler.ingest("CA1", "answered", {}, now=clock(1))
        assert result.accepted is True

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_ingest(self, store, make_call, clock):
        await make_call("CA1")
        store.enqueue_notification = AsyncMock(side_effect=StorageError("queue down"))
        reconciler = WebhookReconciler(store)

        result = await reconciler.ingest("CA1", "busy", {}, now=clock(1))
        assert result.accepted is True
        assert (await store.get_call("CA1")).status == "busy"


class TestProcessWebhook:

    @pytest.mark.asyncio
    async def test_twilio_form_fields(self, reconciler, make_call):
        await make_call("CA1")
        response = await reconciler.process_webhook("CA1", {"CallStatus": "in_progress"})
        assert response == {"success": True, "status": "in-progress"}

    @pytest.mark.asyncio
    async def test_missing_status(self, reconciler):
        response = await reconciler.process_webhook("CA1", {})
        assert response["success"] is True
        assert "error" in response

    @pytest.mark.asyncio
    async def test_duplicate_flag(self, store, make_call):
        await make_call("CA1")
        reconciler = WebhookReconciler(store, EventDeduplicator(bucket_seconds=3600))
        await reconciler.process_webhook("CA1", {"CallStatus": "ringing"})
        response = await reconciler.process_webhook("CA1", {"CallStatus": "ringing"})
        assert response["duplicate"] is True

    @pytest.mark.asyncio
    async def test_unknown_call(self, reconciler):
        response = await reconciler.process_webhook("CA404", {"CallStatus": "ringing"})
        assert response["call_not_found"] is True

    @pytest.mark.asyncio
    async def test_storage_error_is_acknowledged(self, store, make_call):
        await make_call("CA1")
        store.get_call = AsyncMock(side_effect=StorageError("db down"))
        response = await WebhookReconciler(store).process_webhook("CA1", {"CallStatus": "busy"})
        assert response["success"] is True
        assert response["error"] == "db down"

    @pytest.mark.asyncio
    async def test_outcome_in_response(self, reconciler, make_call):
        await make_call("CA1")
        response = await reconciler.process_webhook("CA1", {"CallStatus": "busy"})
        assert response["outcome"]["reason"] == "busy"
