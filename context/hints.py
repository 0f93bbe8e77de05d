"""
Call Hint Detector — One-time, user-facing hints from low-level call signals.

Hints (each at most once per call):
  call_hint_machine_detected   answered by a machine          (high)
  call_hint_caller_listening   answered by a human            (normal)
  call_hint_input_detected     first keypad entry             (high)

A keypad press implies a human, so caller_listening is emitted first when
it has not been already. A hint counts as emitted only once its
notification is persisted; a failed enqueue leaves it eligible.

Per-call HintState is created lazily and discarded on terminal status.
Keypad and AMD signals that arrive after the call ended are dropped.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.status import classify_answered_by, is_terminal_status
from database.store_base import BaseCallStore
from models.schemas import (
    AnsweredBy, CallStatus, NotificationPriority, NotificationRecord,
    NotificationType, utcnow,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


class HintType(str, Enum):
    MACHINE_DETECTED = NotificationType.HINT_MACHINE_DETECTED.value
    CALLER_LISTENING = NotificationType.HINT_CALLER_LISTENING.value
    INPUT_DETECTED = NotificationType.HINT_INPUT_DETECTED.value


_HINT_PRIORITY = {
    HintType.MACHINE_DETECTED: NotificationPriority.HIGH,
    HintType.CALLER_LISTENING: NotificationPriority.NORMAL,
    HintType.INPUT_DETECTED: NotificationPriority.HIGH,
}

_ANSWERED_STATUSES = (CallStatus.ANSWERED.value, CallStatus.IN_PROGRESS.value)


@dataclass
class HintState:
    last_status: Optional[str] = None
    answered_by: AnsweredBy = AnsweredBy.UNKNOWN
    keypad_events: int = 0
    emitted: set[HintType] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_status": self.last_status,
            "answered_by": self.answered_by.value,
            "keypad_events": self.keypad_events,
            "emitted": sorted(h.value for h in self.emitted),
        }


class CallHintDetector:

    def __init__(self, store: BaseCallStore):
        self.store = store
        self._states: dict[str, HintState] = {}
        self._locks = KeyedLock()

    # ── Signals ───────────────────────────────────────────────

    async def on_status(self, call_id: str, status: str, answered_by: Any = None) -> None:
        if not call_id or not status:
            return
        if is_terminal_status(status):
            self.discard(call_id)
            return

        async with self._locks.hold(call_id):
            state = self._state(call_id)
            state.last_status = status
            classified = classify_answered_by(answered_by)
            if classified != AnsweredBy.UNKNOWN:
                state.answered_by = classified
            if status in _ANSWERED_STATUSES:
                await self._emit_for_answer(call_id, state)

    async def on_answered_by(self, call_id: str, answered_by: Any) -> None:
        classified = classify_answered_by(answered_by)
        if not call_id or classified == AnsweredBy.UNKNOWN:
            return
        async with self._locks.hold(call_id):
            if await self._call_ended(call_id):
                return
            state = self._state(call_id)
            state.answered_by = classified
            await self._emit_for_answer(call_id, state)

    async def on_keypad_event(self, call_id: str) -> None:
        if not call_id:
            return
        async with self._locks.hold(call_id):
            if await self._call_ended(call_id):
                return
            state = self._state(call_id)
            state.keypad_events += 1
            if HintType.CALLER_LISTENING not in state.emitted:
                await self._emit(call_id, state, HintType.CALLER_LISTENING, {"inferred_from": "keypad"})
            await self._emit(call_id, state, HintType.INPUT_DETECTED,
                             {"keypad_events": state.keypad_events})

    # ── State ─────────────────────────────────────────────────

    def get_state(self, call_id: str) -> Optional[HintState]:
        return self._states.get(call_id)

    def discard(self, call_id: str) -> None:
        if self._states.pop(call_id, None) is not None:
            logger.debug("hint_state_discarded", call_id=call_id)

    @property
    def active_calls(self) -> int:
        return len(self._states)

    def _state(self, call_id: str) -> HintState:
        state = self._states.get(call_id)
        if state is None:
            state = HintState()
            self._states[call_id] = state
        return state

    async def _call_ended(self, call_id: str) -> bool:
        """True for a terminal call; its state is dropped, never recreated."""
        try:
            call = await self.store.get_call(call_id)
        except Exception as e:
            logger.warning("hint_call_lookup_failed", call_id=call_id, error=str(e))
            return False
        if call is None or not call.is_terminal:
            return False
        self.discard(call_id)
        logger.info("hint_signal_after_end", call_id=call_id, status=call.status)
        return True

    # ── Emission ──────────────────────────────────────────────

    async def _emit_for_answer(self, call_id: str, state: HintState) -> None:
        if state.answered_by == AnsweredBy.MACHINE:
            await self._emit(call_id, state, HintType.MACHINE_DETECTED, {"answered_by": "machine"})
        elif state.answered_by == AnsweredBy.HUMAN:
            await self._emit(call_id, state, HintType.CALLER_LISTENING, {"answered_by": "human"})

    async def _emit(self, call_id: str, state: HintState, hint: HintType,
                    payload: dict[str, Any]) -> bool:
        if hint in state.emitted:
            return False

        try:
            call = await self.store.get_call(call_id)
        except Exception as e:
            logger.warning("hint_call_lookup_failed", call_id=call_id, hint=hint.value, error=str(e))
            return False
        if call is None:
            logger.info("hint_skipped_call_not_found", call_id=call_id, hint=hint.value)
            return False
        if call.is_terminal:
            logger.info("hint_skipped_call_ended", call_id=call_id, hint=hint.value)
            return False
        if not call.destination:
            logger.info("hint_skipped_no_destination", call_id=call_id, hint=hint.value)
            return False

        try:
            notification_id = await self.store.enqueue_notification(NotificationRecord(
                call_id=call_id,
                type=NotificationType(hint.value),
                destination=call.destination,
                payload=payload,
                priority=_HINT_PRIORITY[hint],
            ))
        except Exception as e:
            logger.error("hint_enqueue_failed", call_id=call_id, hint=hint.value, error=str(e))
            return False

        state.emitted.add(hint)
        logger.info("hint_emitted", call_id=call_id, hint=hint.value, notification_id=notification_id)
        return True
