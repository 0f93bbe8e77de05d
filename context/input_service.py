"""
Keypad Input Service — Boundary between keypad webhooks and the engine.

handle_digits():
  no flow yet (in memory or stored)? start one from the call's metadata
  → hint detector (keypad event) → engine.submit → persist attempt (masked)
  → flow finished? enqueue input_flow_completed / input_flow_failed

Raw digits never leave this module: the store and the logs only see the
masked form and the length. Any internal error becomes an explicit
InputResult(error_code=internal_error) instead of an exception.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from context.hints import CallHintDetector
from context.input_engine import (
    InputErrorCode, InputResult, InputStepEngine, StageDefinition, load_stage_definitions,
)
from database.store_base import BaseCallStore
from models.schemas import (
    NotificationPriority, NotificationRecord, NotificationType, StageStatus,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


class KeypadInputService:

    def __init__(
        self,
        engine: InputStepEngine,
        store: BaseCallStore,
        hints: Optional[CallHintDetector] = None,
        notifications: bool = True,
        default_max_retries: int = 3,
    ):
        self.engine = engine
        self.store = store
        self.hints = hints
        self.notifications = notifications
        self.default_max_retries = default_max_retries
        self._locks = KeyedLock()

    async def start_collection(
        self,
        call_id: str,
        stages: Optional[list[StageDefinition]] = None,
    ) -> Optional[StageDefinition]:
        """
        Install the stage list for a call and persist it. Without explicit
        stages the call's metadata is used. Returns the first stage, or None
        when nothing is configured or the flow could not be stored.
        """
        try:
            async with self._locks.hold(call_id):
                return await self._start(call_id, stages)
        except ValueError as e:
            logger.error("input_collection_invalid_config", call_id=call_id, error=str(e))
        except Exception as e:
            logger.error("input_collection_failed", call_id=call_id, error=str(e))
        return None

    async def _start(
        self,
        call_id: str,
        stages: Optional[list[StageDefinition]],
    ) -> Optional[StageDefinition]:
        if stages is None:
            call = await self.store.get_call(call_id)
            if call is None:
                logger.warning("input_collection_call_not_found", call_id=call_id)
                return None
            if call.is_terminal:
                logger.info("input_collection_call_ended", call_id=call_id, status=call.status)
                return None
            stages = load_stage_definitions(call.metadata, self.default_max_retries)
        if not stages:
            logger.warning("input_collection_not_configured", call_id=call_id)
            return None

        first = self.engine.start_flow(call_id, stages)
        try:
            await self.store.persist_input_flow(call_id, [s.stage_key for s in stages])
        except Exception:
            # engine and store must agree on whether a flow exists
            self.engine.clear(call_id)
            raise
        return first

    async def handle_digits(self, call_id: str, digits: Optional[str]) -> InputResult:
        """
        Keypad entry point; never raises. The first keypad event of a call
        whose flow was never started installs it from the call's metadata.
        """
        try:
            async with self._locks.hold(call_id):
                if self.engine.get_state(call_id) is None \
                        and not await self.store.get_call_inputs(call_id):
                    try:
                        await self._start(call_id, None)
                    except ValueError as e:
                        logger.error("input_collection_invalid_config", call_id=call_id, error=str(e))
                return await self._handle(call_id, digits)
        except Exception as e:
            logger.error("keypad_input_error", call_id=call_id, error=str(e))
            return InputResult(valid=False, error_code=InputErrorCode.INTERNAL_ERROR,
                               feedback="Something went wrong. Please try again.")

    async def _handle(self, call_id: str, digits: Optional[str]) -> InputResult:
        if self.hints is not None and digits:
            await self.hints.on_keypad_event(call_id)

        result = self.engine.submit(call_id, digits)
        if result.stage_key is None or result.error_code == InputErrorCode.NO_ACTIVE_STAGE:
            logger.info("keypad_input_ignored", call_id=call_id,
                        reason=result.error_code.value if result.error_code else None)
            return result

        if result.valid:
            status = StageStatus.COMPLETED
        elif result.flow_failed:
            status = StageStatus.FAILED
        else:
            status = StageStatus.PENDING

        await self.store.record_input_attempt(
            call_id, result.stage_key,
            status=status,
            attempts=result.attempts,
            masked_digits=result.masked_digits,
            digits_length=len((digits or "").strip()),
            last_error=result.error_code.value if result.error_code else None,
        )

        if result.flow_complete:
            await self._notify(call_id, NotificationType.INPUT_FLOW_COMPLETED,
                               NotificationPriority.HIGH, result)
            self.engine.clear(call_id)
        elif result.flow_failed:
            await self._notify(call_id, NotificationType.INPUT_FLOW_FAILED,
                               NotificationPriority.HIGH, result)
        return result

    async def _notify(self, call_id: str, notification_type: NotificationType,
                      priority: NotificationPriority, result: InputResult) -> None:
        if not self.notifications:
            return
        try:
            call = await self.store.get_call(call_id)
            if call is None or not call.destination:
                logger.info("input_notification_skipped", call_id=call_id,
                            type=notification_type.value)
                return
            payload: dict[str, Any] = {
                "stage_key": result.stage_key,
                "attempts": result.attempts,
                "masked_digits": result.masked_digits,
            }
            if result.error_code:
                payload["error_code"] = result.error_code.value
            await self.store.enqueue_notification(NotificationRecord(
                call_id=call_id, type=notification_type, destination=call.destination,
                payload=payload, priority=priority,
            ))
        except Exception as e:
            logger.error("input_notification_failed", call_id=call_id,
                         type=notification_type.value, error=str(e))

    def get_state(self, call_id: str) -> Optional[dict[str, Any]]:
        state = self.engine.get_state(call_id)
        return state.to_dict() if state else None
