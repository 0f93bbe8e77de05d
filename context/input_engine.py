"""
Input Step Engine — Deterministic keypad (DTMF) collection per call.

Each call gets an ordered list of stages fixed at start. A stage moves
pending → completed | failed:

    submit(call_id, digits)
      → validate against the current stage, in order:
          no_input → length_mismatch → too_short / too_long
          → pattern_mismatch / range_mismatch / not_allowed → value_mismatch
      → valid:   stage completed, advance to the next pending stage
      → invalid: attempts += 1; at the retry ceiling the stage is failed
                 and the flow stops there (the caller decides what next)

State is in-memory only and dies with the call (clear()). Callers
serialize submit() per call; different calls never share state.

Usage:
    engine = InputStepEngine()
    first = engine.start_flow("CA123", [StageDefinition(stage_key="PIN", expected_length=4)])
    result = engine.submit("CA123", "1234")
    result.flow_complete  # True
"""
from __future__ import annotations

import json
import re
import structlog
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from models.schemas import StageStatus, utcnow
from utils.dtmf import MASK_CHAR, mask_digits, normalize_stage_key

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Stage definitions
# ──────────────────────────────────────────────────────────────

class ValidationRule(BaseModel):
    type: str = "regex"                  # regex | range | allow_list
    pattern: Optional[str] = None
    min: Optional[int] = None
    max: Optional[int] = None
    allowed_values: list[str] = []


class StageDefinition(BaseModel):
    stage_key: str
    label: str = ""
    expected_length: Optional[int] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    validation: Optional[ValidationRule] = None
    expected_value: Optional[str] = None

    prompt: Optional[str] = None
    help_prompt: Optional[str] = None
    success_message: str = "Received {digits_len} digits."
    failure_message: str = "That format isn't valid. Let's try again."

    max_retries: int = 3
    sensitive: bool = True
    finish_on_key: str = "#"
    timeout_seconds: int = 5

    @property
    def display_label(self) -> str:
        return self.label or self.stage_key

    @property
    def prompt_text(self) -> str:
        return self.prompt or f"Please enter your {self.display_label}."

    @classmethod
    def from_config(cls, entry: dict[str, Any], default_max_retries: int = 3) -> StageDefinition:
        """Build a stage from a loosely-keyed config entry (YAML, call metadata)."""
        key = normalize_stage_key(
            entry.get("stage") or entry.get("stage_key") or entry.get("stageKey")
            or entry.get("key") or entry.get("label") or entry.get("name")
        )
        data: dict[str, Any] = {
            "stage_key": key,
            "label": entry.get("label") or entry.get("name") or key,
            "max_retries": _to_int(entry.get("max_retries") or entry.get("maxRetries")) or default_max_retries,
        }

        expected_length = _first_int(entry, "expected_length", "expectedLength", "numDigits", "length")
        if expected_length:
            data["expected_length"] = expected_length
        min_length = _first_int(entry, "min_length", "minLen")
        if min_length:
            data["min_length"] = min_length
        max_length = _first_int(entry, "max_length", "maxLen")
        if max_length:
            data["max_length"] = max_length

        expected_value = next(
            (entry[k] for k in ("expected_value", "expectedValue", "value", "code")
             if entry.get(k) not in (None, "")),
            None,
        )
        if expected_value is not None:
            data["expected_value"] = str(expected_value).strip()

        validation = entry.get("validation")
        if isinstance(validation, dict):
            rule_type = validation.get("type", "regex")
            data["validation"] = ValidationRule(
                type="allow_list" if rule_type == "lookup" else rule_type,
                pattern=validation.get("pattern"),
                min=_to_int(validation.get("min")),
                max=_to_int(validation.get("max")),
                allowed_values=[str(v) for v in
                                validation.get("allowed_values") or validation.get("allowedValues") or []],
            )
        elif entry.get("pattern"):
            data["validation"] = ValidationRule(type="regex", pattern=entry["pattern"])

        for target, keys in (
            ("prompt", ("prompt", "promptText")),
            ("help_prompt", ("help_prompt", "helpPrompt")),
            ("success_message", ("success_message", "successMessage")),
            ("failure_message", ("failure_message", "failureMessage", "retryPrompt")),
            ("finish_on_key", ("finish_on_key", "finishOnKey")),
        ):
            value = next((entry[k] for k in keys if entry.get(k)), None)
            if value:
                data[target] = value

        sensitive = entry.get("sensitive", entry.get("isSensitive"))
        if sensitive is not None:
            data["sensitive"] = bool(sensitive)
        timeout = _first_int(entry, "timeout_seconds", "timeoutSeconds")
        if timeout:
            data["timeout_seconds"] = timeout

        return cls(**data)


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_int(entry: dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        value = _to_int(entry.get(key))
        if value is not None:
            return value
    return None


def load_stage_definitions(metadata: Any, default_max_retries: int = 3) -> list[StageDefinition]:
    """
    Build a call's stage list from its metadata.

    Sources, in order: collect_input_sequence, input_sequence, then the
    dtmf_expectations / input_expectations groups. Entries sharing a key are
    merged. With no stages at all, a bare expected OTP (expected_otp,
    otp_code, passcode, ...) becomes a single OTP stage.
    """
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError as e:
            logger.warning("stage_metadata_unparseable", error=str(e))
            return []
    metadata = metadata or {}

    entries: list[dict[str, Any]] = []
    for source in ("collect_input_sequence", "input_sequence"):
        sequence = metadata.get(source)
        if isinstance(sequence, list):
            for index, entry in enumerate(sequence):
                if not isinstance(entry, dict):
                    continue
                entry = dict(entry)
                if not any(entry.get(k) for k in ("stage", "stage_key", "stageKey", "label", "name")):
                    entry["stage"] = f"STEP_{len(entries) + 1}"
                entries.append(entry)

    for group_name in ("dtmf_expectations", "input_expectations"):
        group = metadata.get(group_name)
        if isinstance(group, list):
            entries.extend(dict(e) for e in group if isinstance(e, dict))
        elif isinstance(group, dict):
            for stage, value in group.items():
                if value is None:
                    continue
                if isinstance(value, dict):
                    entries.append({"stage": stage, **value})
                else:
                    entries.append({"stage": stage, "expected_value": value})

    merged: dict[str, dict[str, Any]] = {}
    for entry in entries:
        key = normalize_stage_key(
            entry.get("stage") or entry.get("stage_key") or entry.get("stageKey")
            or entry.get("label") or entry.get("name")
        )
        merged.setdefault(key, {"stage": key}).update(
            {k: v for k, v in entry.items() if k not in ("stage", "stage_key", "stageKey")}
        )

    if not merged:
        otp = next(
            (metadata.get(k) for k in ("expected_otp", "otp_code", "one_time_passcode",
                                       "expected_passcode", "passcode") if metadata.get(k)),
            None,
        )
        if otp:
            otp = str(otp).strip()
            merged["OTP"] = {
                "stage": "OTP", "label": "OTP", "expected_value": otp,
                "expected_length": _to_int(metadata.get("default_digit_length")) or len(otp),
            }

    return [StageDefinition.from_config(e, default_max_retries) for e in merged.values()]


# ──────────────────────────────────────────────────────────────
#  Results & per-call state
# ──────────────────────────────────────────────────────────────

class InputErrorCode(str, Enum):
    NO_INPUT = "no_input"
    LENGTH_MISMATCH = "length_mismatch"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    PATTERN_MISMATCH = "pattern_mismatch"
    RANGE_MISMATCH = "range_mismatch"
    NOT_ALLOWED = "not_allowed"
    VALUE_MISMATCH = "value_mismatch"
    # engine-level
    CALL_NOT_FOUND = "call_not_found"
    NO_ACTIVE_STAGE = "no_active_stage"
    INTERNAL_ERROR = "internal_error"


@dataclass
class InputResult:
    valid: bool
    error_code: Optional[InputErrorCode] = None
    attempts_remaining: Optional[int] = None
    next_stage: Optional[StageDefinition] = None
    flow_complete: bool = False
    flow_failed: bool = False
    stage_key: Optional[str] = None
    masked_digits: str = ""
    feedback: str = ""
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "error_code": self.error_code.value if self.error_code else None,
            "attempts_remaining": self.attempts_remaining,
            "next_stage": self.next_stage.stage_key if self.next_stage else None,
            "flow_complete": self.flow_complete,
            "flow_failed": self.flow_failed,
            "stage_key": self.stage_key,
            "masked_digits": self.masked_digits,
            "feedback": self.feedback,
        }


@dataclass
class StageProgress:
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    masked_digits: str = ""
    last_error: Optional[InputErrorCode] = None


@dataclass
class CallInputState:
    call_id: str
    stages: list[StageDefinition]
    current_index: int = 0
    progress: dict[str, StageProgress] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)

    @property
    def current_stage(self) -> Optional[StageDefinition]:
        if self.current_index >= len(self.stages):
            return None
        return self.stages[self.current_index]

    @property
    def is_complete(self) -> bool:
        return all(p.status == StageStatus.COMPLETED for p in self.progress.values())

    @property
    def is_failed(self) -> bool:
        return any(p.status == StageStatus.FAILED for p in self.progress.values())

    def to_dict(self) -> dict[str, Any]:
        current = self.current_stage
        return {
            "call_id": self.call_id,
            "current_stage": current.stage_key if current else None,
            "current_index": self.current_index,
            "total_stages": len(self.stages),
            "complete": self.is_complete,
            "failed": self.is_failed,
            "stages": [
                {
                    "stage_key": s.stage_key,
                    "status": self.progress[s.stage_key].status.value,
                    "attempts": self.progress[s.stage_key].attempts,
                    "masked_digits": self.progress[s.stage_key].masked_digits,
                }
                for s in self.stages
            ],
        }


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class InputStepEngine:

    def __init__(self, mask_char: str = MASK_CHAR):
        self.mask_char = mask_char
        self._calls: dict[str, CallInputState] = {}

    # ── Lifecycle ─────────────────────────────────────────────

    def start_flow(self, call_id: str, stages: list[StageDefinition]) -> StageDefinition:
        if not stages:
            raise ValueError(f"No input stages configured for call {call_id}")
        keys = [s.stage_key for s in stages]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage keys: {', '.join(duplicates)}")

        state = CallInputState(
            call_id=call_id,
            stages=list(stages),
            progress={s.stage_key: StageProgress() for s in stages},
        )
        self._calls[call_id] = state
        logger.info("input_flow_started", call_id=call_id, stages=keys)
        return state.stages[0]

    def clear(self, call_id: str) -> None:
        if self._calls.pop(call_id, None) is not None:
            logger.debug("input_flow_cleared", call_id=call_id)

    def get_state(self, call_id: str) -> Optional[CallInputState]:
        return self._calls.get(call_id)

    def get_current_stage(self, call_id: str) -> Optional[StageDefinition]:
        state = self._calls.get(call_id)
        if state is None or state.is_failed:
            return None
        return state.current_stage

    @property
    def active_calls(self) -> int:
        return len(self._calls)

    # ── Submission ────────────────────────────────────────────

    def submit(self, call_id: str, digits: Optional[str]) -> InputResult:
        state = self._calls.get(call_id)
        if state is None:
            return InputResult(valid=False, error_code=InputErrorCode.CALL_NOT_FOUND)

        stage = state.current_stage
        if stage is None or state.is_failed:
            return InputResult(
                valid=False,
                error_code=InputErrorCode.NO_ACTIVE_STAGE,
                flow_complete=state.is_complete,
                flow_failed=state.is_failed,
                stage_key=stage.stage_key if stage else None,
            )

        digits = (digits or "").strip()
        progress = state.progress[stage.stage_key]
        progress.attempts += 1
        progress.masked_digits = self.mask_digits(digits, stage.sensitive)
        error = self.validate_digits(stage, digits)

        if error is None:
            progress.status = StageStatus.COMPLETED
            progress.last_error = None
            next_stage = self._advance(state)
            logger.info("input_stage_completed", call_id=call_id, stage=stage.stage_key,
                        attempts=progress.attempts, masked=progress.masked_digits,
                        next_stage=next_stage.stage_key if next_stage else None)
            return InputResult(
                valid=True,
                next_stage=next_stage,
                flow_complete=next_stage is None,
                stage_key=stage.stage_key,
                masked_digits=progress.masked_digits,
                feedback=stage.success_message.replace("{digits_len}", str(len(digits))),
                attempts=progress.attempts,
            )

        progress.last_error = error
        remaining = max(0, stage.max_retries - progress.attempts)
        if remaining == 0:
            progress.status = StageStatus.FAILED
            logger.warning("input_stage_failed", call_id=call_id, stage=stage.stage_key,
                           attempts=progress.attempts, error=error.value)
            feedback = (f"After {progress.attempts} attempts, we couldn't validate "
                        f"your {stage.display_label.lower()}.")
        else:
            logger.info("input_stage_retry", call_id=call_id, stage=stage.stage_key,
                        attempts=progress.attempts, remaining=remaining, error=error.value)
            if error == InputErrorCode.NO_INPUT:
                feedback = f"I didn't receive any input. {stage.prompt_text}"
            else:
                feedback = f"{stage.failure_message} Please try again."

        return InputResult(
            valid=False,
            error_code=error,
            attempts_remaining=remaining,
            flow_failed=remaining == 0,
            stage_key=stage.stage_key,
            masked_digits=progress.masked_digits,
            feedback=feedback,
            attempts=progress.attempts,
        )

    def _advance(self, state: CallInputState) -> Optional[StageDefinition]:
        for index in range(state.current_index + 1, len(state.stages)):
            if state.progress[state.stages[index].stage_key].status != StageStatus.COMPLETED:
                state.current_index = index
                return state.stages[index]
        state.current_index = len(state.stages)
        return None

    # ── Validation ────────────────────────────────────────────

    def validate_digits(self, stage: StageDefinition, digits: str) -> Optional[InputErrorCode]:
        """First failing rule, or None when the digits are acceptable."""
        if not digits:
            return InputErrorCode.NO_INPUT
        if stage.expected_length and len(digits) != stage.expected_length:
            return InputErrorCode.LENGTH_MISMATCH
        if stage.min_length and len(digits) < stage.min_length:
            return InputErrorCode.TOO_SHORT
        if stage.max_length and len(digits) > stage.max_length:
            return InputErrorCode.TOO_LONG

        rule = stage.validation
        if rule is not None:
            if rule.type == "regex" and rule.pattern:
                try:
                    if not re.search(rule.pattern, digits):
                        return InputErrorCode.PATTERN_MISMATCH
                except re.error as e:
                    logger.warning("invalid_stage_pattern", stage=stage.stage_key, error=str(e))
            elif rule.type == "range" and (rule.min is not None or rule.max is not None):
                if not digits.isdigit():
                    return InputErrorCode.RANGE_MISMATCH
                number = int(digits)
                if rule.min is not None and number < rule.min:
                    return InputErrorCode.RANGE_MISMATCH
                if rule.max is not None and number > rule.max:
                    return InputErrorCode.RANGE_MISMATCH
            elif rule.type == "allow_list" and rule.allowed_values:
                if digits not in rule.allowed_values:
                    return InputErrorCode.NOT_ALLOWED

        if stage.expected_value and digits != stage.expected_value:
            return InputErrorCode.VALUE_MISMATCH
        return None

    def mask_digits(self, digits: str, sensitive: bool = True) -> str:
        return mask_digits(digits, sensitive=sensitive, mask_char=self.mask_char)

    # ── Prompting ─────────────────────────────────────────────

    @staticmethod
    def gather_config(stage: StageDefinition) -> dict[str, Any]:
        """Keypad gather parameters for the provider adapter's prompt."""
        config: dict[str, Any] = {
            "input": "dtmf",
            "timeout": stage.timeout_seconds,
            "finish_on_key": stage.finish_on_key,
            "prompt": stage.prompt_text,
        }
        if stage.expected_length:
            config["num_digits"] = stage.expected_length
        if stage.help_prompt:
            config["help_prompt"] = stage.help_prompt
        return config
