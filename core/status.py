"""
Status Canonicalizer — Provider status vocabulary → canonical CallStatus.

Providers report call progress with their own strings ("queued",
"in_progress", "cancelled", ...). Everything inside the core works on the
small canonical vocabulary in models.schemas.CallStatus. Strings we do not
recognize pass through unchanged so new provider statuses are recorded
rather than dropped.

Answering-machine detection results are normalized the same way into
AnsweredBy (human / machine / unknown).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from models.schemas import AnsweredBy, CallStatus, TERMINAL_STATUSES


# ──────────────────────────────────────────────────────────────
#  Status vocabulary
# ──────────────────────────────────────────────────────────────

_STATUS_MAP: dict[str, CallStatus] = {
    "initiated": CallStatus.INITIATED,
    "queued": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "answered": CallStatus.ANSWERED,
    "in-progress": CallStatus.IN_PROGRESS,
    "in_progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
    "no_answer": CallStatus.NO_ANSWER,
    "canceled": CallStatus.CANCELED,
    "cancelled": CallStatus.CANCELED,
    "failed": CallStatus.FAILED,
}


@dataclass(frozen=True)
class StatusMapping:
    raw: str
    status: str           # canonical value, or the raw string when unrecognized
    recognized: bool

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def canonicalize_status(raw: Optional[str]) -> StatusMapping:
    raw = raw or ""
    mapped = _STATUS_MAP.get(raw.strip().lower())
    if mapped is None:
        return StatusMapping(raw=raw, status=raw, recognized=False)
    return StatusMapping(raw=raw, status=mapped.value, recognized=True)


def is_terminal_status(status: str) -> bool:
    return canonicalize_status(status).is_terminal


def get_all_mapped_statuses() -> list[str]:
    """Canonical statuses in lifecycle order."""
    return [s.value for s in CallStatus]


# ──────────────────────────────────────────────────────────────
#  Answered-by (AMD) normalization
# ──────────────────────────────────────────────────────────────

_HUMAN_VALUES = frozenset({"human", "person", "live", "positive_human"})
_MACHINE_VALUES = frozenset({
    "machine", "machine_start", "machine_end_beep", "machine_end_silence",
    "machine_end_other", "fax", "positive_machine", "unknown_machine",
    "answering_machine",
})


def normalize_answered_by(value) -> str:
    if value is None:
        return ""
    return str(value).strip().lower().replace("-", "_").replace(" ", "_")


def classify_answered_by(value) -> AnsweredBy:
    if isinstance(value, AnsweredBy):
        return value
    normalized = normalize_answered_by(value)
    if normalized in _HUMAN_VALUES:
        return AnsweredBy.HUMAN
    if normalized in _MACHINE_VALUES:
        return AnsweredBy.MACHINE
    return AnsweredBy.UNKNOWN
