"""
Core data models for the call-session core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED.value,
    CallStatus.BUSY.value,
    CallStatus.NO_ANSWER.value,
    CallStatus.CANCELED.value,
    CallStatus.FAILED.value,
})


class AnsweredBy(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"
    UNKNOWN = "unknown"


class NotificationType(str, Enum):
    CALL_INITIATED = "call_initiated"
    CALL_RINGING = "call_ringing"
    CALL_ANSWERED = "call_answered"
    CALL_IN_PROGRESS = "call_in_progress"
    CALL_COMPLETED = "call_completed"
    CALL_BUSY = "call_busy"
    CALL_NO_ANSWER = "call_no_answer"
    CALL_CANCELED = "call_canceled"
    CALL_FAILED = "call_failed"
    HINT_MACHINE_DETECTED = "call_hint_machine_detected"
    HINT_CALLER_LISTENING = "call_hint_caller_listening"
    HINT_INPUT_DETECTED = "call_hint_input_detected"
    INPUT_FLOW_COMPLETED = "input_flow_completed"
    INPUT_FLOW_FAILED = "input_flow_failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Lower rank is delivered first
PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


class StageStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Call session — one row per call attempt
# ──────────────────────────────────────────────────────────────

class CallOutcome(BaseModel):
    """Final result of a call, computed once on the terminal transition."""
    success: bool
    final_status: str
    reason: str
    duration: int = 0                          # seconds from session start
    completed_at: datetime = Field(default_factory=utcnow)


class CallSession(BaseModel):
    call_id: str
    status: str = CallStatus.INITIATED.value   # canonical, or a pass-through value
    provider_status: str = ""                  # raw provider string, for audit
    answered_by: AnsweredBy = AnsweredBy.UNKNOWN
    destination: Optional[str] = None          # notification target (chat id, …)
    provider: str = "twilio"
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None
    outcome: Optional[CallOutcome] = None
    recording_available: bool = False
    transcript_available: bool = False
    metadata: dict[str, Any] = {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WebhookEvent(BaseModel):
    """Append-only audit record of one accepted provider event."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    call_id: str
    status: str
    payload: dict[str, Any] = {}
    received_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Input collection — durable audit of the keypad flow
# ──────────────────────────────────────────────────────────────

class InputStageRecord(BaseModel):
    """Persisted per-stage progress. Digits are stored masked only."""
    call_id: str
    stage_key: str
    position: int = 0
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    masked_digits: str = ""
    digits_length: int = 0
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def confirmed(self) -> bool:
        return self.status == StageStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Notifications — queued outbound messages
# ──────────────────────────────────────────────────────────────

class NotificationRecord(BaseModel):
    id: Optional[str] = None                   # assigned by the store
    call_id: str
    type: NotificationType
    destination: str
    payload: dict[str, Any] = {}
    status: NotificationStatus = NotificationStatus.PENDING
    priority: NotificationPriority = NotificationPriority.NORMAL
    error: Optional[str] = None
    retry_count: int = 0                       # failed delivery attempts so far
    permanent: bool = False                    # non-retryable failure recorded
    message_id: Optional[str] = None           # channel-assigned id once sent
    latency_ms: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority.value, 99)
