"""Tests for the keypad input service (engine + audit + notifications)."""
import pytest
from unittest.mock import AsyncMock

from context.input_engine import InputErrorCode, StageDefinition
from context.input_service import KeypadInputService
from database.store_base import StorageError
from models.schemas import NotificationType, StageStatus


class TestStartCollection:

    @pytest.mark.asyncio
    async def test_explicit_stages_persisted(self, input_service, store, make_call, account_and_pin):
        await make_call("CA1")
        first = await input_service.start_collection("CA1", account_and_pin)
        assert first.stage_key == "ACCOUNT"

        inputs = await store.get_call_inputs("CA1")
        assert [i.stage_key for i in inputs] == ["ACCOUNT", "PIN"]
        assert all(i.status == StageStatus.PENDING for i in inputs)

    @pytest.mark.asyncio
    async def test_stages_from_call_metadata(self, input_service, make_call):
        await make_call("CA1", expected_otp="482913")
        first = await input_service.start_collection("CA1")
        assert first.stage_key == "OTP"
        assert first.expected_length == 6

    @pytest.mark.asyncio
    async def test_nothing_configured(self, input_service, make_call):
        await make_call("CA1")
        assert await input_service.start_collection("CA1") is None

    @pytest.mark.asyncio
    async def test_unknown_call(self, input_service):
        assert await input_service.start_collection("CA404") is None

    @pytest.mark.asyncio
    async def test_duplicate_keys_skipped(self, input_service, store, make_call):
        await make_call("CA1")
        stages = [StageDefinition(stage_key="PIN"), StageDefinition(stage_key="PIN")]
        assert await input_service.start_collection("CA1", stages) is None
        assert await store.get_call_inputs("CA1") == []


class TestHandleDigits:

    @pytest.mark.asyncio
    async def test_attempt_persisted_masked(self, input_service, store, make_call, account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        await input_service.handle_digits("CA1", "123456")

        account = (await store.get_call_inputs("CA1"))[0]
        assert account.status == StageStatus.COMPLETED
        assert account.attempts == 1
        assert account.digits_length == 6
        assert account.masked_digits.endswith("56")
        assert "1234" not in account.masked_digits

    @pytest.mark.asyncio
    async def test_retry_persists_last_error(self, input_service, store, make_call, account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        result = await input_service.handle_digits("CA1", "12")

        assert result.error_code == InputErrorCode.LENGTH_MISMATCH
        account = (await store.get_call_inputs("CA1"))[0]
        assert account.status == StageStatus.PENDING
        assert account.last_error == "length_mismatch"

    @pytest.mark.asyncio
    async def test_flow_completed_notification(self, input_service, store, engine, make_call,
                                               account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        await input_service.handle_digits("CA1", "123456")
        result = await input_service.handle_digits("CA1", "4321")

        assert result.flow_complete is True
        assert engine.get_state("CA1") is None
        pending = await store.fetch_pending_notifications(limit=50)
        completed = [r for r in pending if r.type == NotificationType.INPUT_FLOW_COMPLETED]
        assert len(completed) == 1
        assert completed[0].payload["stage_key"] == "PIN"
        assert "4321" not in str(completed[0].payload)

    @pytest.mark.asyncio
    async def test_flow_failed_notification(self, input_service, store, make_call, account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        for _ in range(3):
            result = await input_service.handle_digits("CA1", "1")

        assert result.flow_failed is True
        pending = await store.fetch_pending_notifications(limit=50)
        failed = [r for r in pending if r.type == NotificationType.INPUT_FLOW_FAILED]
        assert len(failed) == 1
        assert failed[0].payload["error_code"] == "length_mismatch"
        assert (await store.get_call_inputs("CA1"))[0].status == StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_keypad_hints(self, input_service, store, make_call, account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        for digits in ("1", "2", "123456"):
            await input_service.handle_digits("CA1", digits)

        types = [r.type for r in await store.fetch_pending_notifications(limit=50)]
        assert types.count(NotificationType.HINT_INPUT_DETECTED) == 1
        assert types.count(NotificationType.HINT_CALLER_LISTENING) == 1

    @pytest.mark.asyncio
    async def test_no_flow(self, input_service):
        result = await input_service.handle_digits("CA404", "1234")
        assert result.error_code == InputErrorCode.CALL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_internal_error_is_a_result(self, engine, store, make_call, account_and_pin):
        await make_call("CA1")
        store.record_input_attempt = AsyncMock(side_effect=RuntimeError("disk full"))
        service = KeypadInputService(engine, store)
        await service.start_collection("CA1", account_and_pin)

        result = await service.handle_digits("CA1", "123456")
        assert result.valid is False
        assert result.error_code == InputErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_notifications_disabled(self, engine, store, make_call):
        await make_call("CA1")
        service = KeypadInputService(engine, store, notifications=False)
        await service.start_collection("CA1", [StageDefinition(stage_key="PIN", expected_length=4)])
        await service.handle_digits("CA1", "1234")
        assert await store.count_pending_notifications() == 0

    @pytest.mark.asyncio
    async def test_state_snapshot(self, input_service, make_call, account_and_pin):
        await make_call("CA1")
        await input_service.start_collection("CA1", account_and_pin)
        state = input_service.get_state("CA1")
        assert state["current_stage"] == "ACCOUNT"
        assert input_service.get_state("CA404") is None


class TestStorageFailures:

    @pytest.mark.asyncio
    async def test_unstored_flow_is_not_installed(self, engine, store, make_call, account_and_pin):
        await make_call("CA1")
        store.persist_input_flow = AsyncMock(side_effect=StorageError("db down"))
        service = KeypadInputService(engine, store)

        assert await service.start_collection("CA1", account_and_pin) is None
        assert engine.get_state("CA1") is None

    @pytest.mark.asyncio
    async def test_lookup_failure_is_a_result(self, engine, store, make_call):
        await make_call("CA1", expected_otp="2468")
        store.get_call_inputs = AsyncMock(side_effect=StorageError("db down"))
        service = KeypadInputService(engine, store)

        result = await service.handle_digits("CA1", "2468")
        assert result.valid is False
        assert result.error_code == InputErrorCode.INTERNAL_ERROR
        assert engine.get_state("CA1") is None


class TestFirstKeypadEvent:

    @pytest.mark.asyncio
    async def test_flow_started_from_metadata(self, input_service, store, make_call):
        await make_call("CA1", expected_otp="2468")
        result = await input_service.handle_digits("CA1", "2468")
        assert result.valid is True
        assert result.flow_complete is True
        assert [i.stage_key for i in await store.get_call_inputs("CA1")] == ["OTP"]

    @pytest.mark.asyncio
    async def test_ended_call_not_started(self, input_service, store, make_call):
        await make_call("CA1", expected_otp="2468")
        await store.upsert_call("CA1", status="completed")

        result = await input_service.handle_digits("CA1", "2468")
        assert result.error_code == InputErrorCode.CALL_NOT_FOUND
        assert await store.get_call_inputs("CA1") == []
