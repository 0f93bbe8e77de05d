"""
Notification Renderer — NotificationRecord → human-facing text.

The dispatch queue hands every record to a renderer before delivery. A
renderer returns None when it cannot produce text for a record; the queue
treats that as a permanent failure.

Custom wording: pass overrides keyed by notification type value.
    NotificationRenderer({"call_ringing": "📞 Ringing {destination}"})
Placeholders are filled from the record payload plus call_id.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from models.schemas import NotificationRecord, NotificationType

logger = structlog.get_logger()


DEFAULT_TEMPLATES: dict[str, str] = {
    NotificationType.CALL_INITIATED.value: "📤 Call initiated.",
    NotificationType.CALL_RINGING.value: "🔔 Phone is ringing…",
    NotificationType.CALL_ANSWERED.value: "✅ Call has been answered.",
    NotificationType.CALL_IN_PROGRESS.value: "🟢 Call in progress.",
    NotificationType.HINT_MACHINE_DETECTED.value: "🤖 Voicemail or automation detected.",
    NotificationType.HINT_CALLER_LISTENING.value: "👂 Caller is listening.",
    NotificationType.HINT_INPUT_DETECTED.value: "⌨️ Caller is entering digits…",
    NotificationType.INPUT_FLOW_COMPLETED.value: "✅ All inputs received ({stage_key}: {masked_digits}).",
    NotificationType.INPUT_FLOW_FAILED.value: "❌ Input failed for {stage_key} after {attempts} attempts.",
}

_OUTCOME_TYPES = {
    NotificationType.CALL_COMPLETED.value,
    NotificationType.CALL_BUSY.value,
    NotificationType.CALL_NO_ANSWER.value,
    NotificationType.CALL_CANCELED.value,
    NotificationType.CALL_FAILED.value,
}

_TERMINAL_FALLBACK = {
    NotificationType.CALL_COMPLETED.value: "🏁 Call has ended.",
    NotificationType.CALL_BUSY.value: "🚫 Line is busy.",
    NotificationType.CALL_NO_ANSWER.value: "⏳ No answer.",
    NotificationType.CALL_CANCELED.value: "⚠️ Call was canceled.",
    NotificationType.CALL_FAILED.value: "❌ Call failed to connect.",
}


class NotificationRenderer:

    def __init__(self, overrides: Optional[dict[str, str]] = None):
        self.templates = {**DEFAULT_TEMPLATES, **(overrides or {})}

    def render(self, record: NotificationRecord) -> Optional[str]:
        type_value = record.type.value
        context: dict[str, Any] = {"call_id": record.call_id, "destination": record.destination,
                                   **record.payload}

        if type_value in self.templates:
            try:
                return self.templates[type_value].format(**context)
            except Exception as e:
                logger.warning("render_failed", type=type_value, call_id=record.call_id, error=str(e))
                return None

        if type_value in _OUTCOME_TYPES:
            outcome = record.payload.get("outcome")
            if outcome:
                return self.render_outcome(outcome)
            return _TERMINAL_FALLBACK[type_value]

        logger.warning("render_no_template", type=type_value, call_id=record.call_id)
        return None

    @staticmethod
    def render_outcome(outcome: dict[str, Any]) -> str:
        success = outcome.get("success", False)
        if success:
            text = "🏁 Completed successfully."
        else:
            text = f"❌ Not completed: {outcome.get('reason') or outcome.get('final_status')}."
        duration = int(outcome.get("duration") or 0)
        if duration:
            text += f"\n⏱️ Duration: {duration // 60}m {duration % 60}s"
        return text
