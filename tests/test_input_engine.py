"""
Tests for the keypad input step engine.

Covers:
  Masking:     suffix rules, non-sensitive stages
  Progression: ordered stages, retry ceiling, no-active-stage
  Validation:  error code precedence, regex / range / allow-list rules
  Config:      loosely-keyed stage entries, metadata sources
"""
import pytest

from context.input_engine import (
    InputErrorCode, InputStepEngine, StageDefinition, ValidationRule, load_stage_definitions,
)
from models.schemas import StageStatus
from utils.dtmf import MASK_CHAR, mask_digits, normalize_stage_key


# ══════════════════════════════════════════════════════════════
#  MASKING
# ══════════════════════════════════════════════════════════════

class TestMasking:

    def test_six_digits_keep_two(self):
        assert mask_digits("123456") == MASK_CHAR * 4 + "56"

    def test_two_digits_fully_masked(self):
        assert mask_digits("12") == MASK_CHAR * 2

    def test_three_digits_keep_one(self):
        assert mask_digits("123") == MASK_CHAR * 2 + "3"

    @pytest.mark.parametrize("digits", ["1", "1234", "12345678", "98765432101"])
    def test_length_and_suffix(self, digits):
        masked = mask_digits(digits)
        assert len(masked) == len(digits)
        visible = masked.lstrip(MASK_CHAR)
        assert len(visible) <= 2
        assert digits.endswith(visible)

    def test_not_sensitive(self):
        assert mask_digits("1234", sensitive=False) == "1234"

    def test_empty(self):
        assert mask_digits("") == ""

    def test_custom_mask_char(self):
        assert InputStepEngine(mask_char="*").mask_digits("123456") == "****56"

    def test_normalize_stage_key(self):
        assert normalize_stage_key(" otp ") == "OTP"
        assert normalize_stage_key(None) == "GENERIC"


# ══════════════════════════════════════════════════════════════
#  PROGRESSION
# ══════════════════════════════════════════════════════════════

class TestProgression:

    @pytest.fixture
    def stages(self):
        return [
            StageDefinition(stage_key="A", expected_length=4),
            StageDefinition(stage_key="B", expected_value="9999"),
        ]

    def test_two_stages_complete(self, engine, stages):
        first = engine.start_flow("CA1", stages)
        assert first.stage_key == "A"

        r1 = engine.submit("CA1", "1234")
        assert r1.valid is True
        assert r1.next_stage.stage_key == "B"
        assert r1.flow_complete is False

        r2 = engine.submit("CA1", "9999")
        assert r2.valid is True
        assert r2.flow_complete is True
        assert r2.next_stage is None

    def test_retry_ceiling_fails_without_advancing(self, engine, stages):
        engine.start_flow("CA1", stages)
        engine.submit("CA1", "1234")

        results = [engine.submit("CA1", "9998") for _ in range(3)]
        assert [r.attempts_remaining for r in results] == [2, 1, 0]
        assert [r.flow_failed for r in results] == [False, False, True]
        assert all(r.error_code == InputErrorCode.VALUE_MISMATCH for r in results)
        assert all(r.next_stage is None for r in results)

        state = engine.get_state("CA1")
        assert state.progress["B"].status == StageStatus.FAILED
        assert state.is_failed
        assert engine.get_current_stage("CA1") is None

    def test_submit_after_failure(self, engine, stages):
        engine.start_flow("CA1", [StageDefinition(stage_key="A", expected_length=4, max_retries=1)])
        assert engine.submit("CA1", "1").flow_failed is True
        again = engine.submit("CA1", "1234")
        assert again.valid is False
        assert again.error_code == InputErrorCode.NO_ACTIVE_STAGE
        assert again.flow_failed is True

    def test_submit_after_completion(self, engine):
        engine.start_flow("CA1", [StageDefinition(stage_key="A")])
        engine.submit("CA1", "5")
        again = engine.submit("CA1", "5")
        assert again.error_code == InputErrorCode.NO_ACTIVE_STAGE
        assert again.flow_complete is True

    def test_unknown_call(self, engine):
        result = engine.submit("CA404", "1234")
        assert result.valid is False
        assert result.error_code == InputErrorCode.CALL_NOT_FOUND

    def test_retry_then_success(self, engine):
        engine.start_flow("CA1", [StageDefinition(stage_key="PIN", expected_length=4)])
        assert engine.submit("CA1", "12").attempts_remaining == 2
        ok = engine.submit("CA1", "1234")
        assert ok.valid is True
        assert ok.attempts == 2
        assert ok.flow_complete is True

    def test_calls_are_isolated(self, engine, stages):
        engine.start_flow("CA1", stages)
        engine.start_flow("CA2", stages)
        engine.submit("CA1", "1234")
        assert engine.get_current_stage("CA1").stage_key == "B"
        assert engine.get_current_stage("CA2").stage_key == "A"
        assert engine.active_calls == 2

    def test_clear(self, engine, stages):
        engine.start_flow("CA1", stages)
        engine.clear("CA1")
        engine.clear("CA1")
        assert engine.get_state("CA1") is None

    def test_empty_stage_list_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.start_flow("CA1", [])

    def test_duplicate_keys_rejected(self, engine):
        with pytest.raises(ValueError, match="PIN"):
            engine.start_flow("CA1", [StageDefinition(stage_key="PIN"), StageDefinition(stage_key="PIN")])

    def test_masked_digits_in_result(self, engine):
        engine.start_flow("CA1", [StageDefinition(stage_key="ACCOUNT", expected_length=6)])
        result = engine.submit("CA1", "123456")
        assert result.masked_digits == MASK_CHAR * 4 + "56"
        assert "123456" not in str(result.to_dict())

    def test_state_to_dict(self, engine, stages):
        engine.start_flow("CA1", stages)
        engine.submit("CA1", "1234")
        data = engine.get_state("CA1").to_dict()
        assert data["current_stage"] == "B"
        assert data["total_stages"] == 2
        assert data["stages"][0]["status"] == "completed"
        assert data["stages"][1]["status"] == "pending"


# ══════════════════════════════════════════════════════════════
#  VALIDATION
# ══════════════════════════════════════════════════════════════

class TestValidation:

    def test_precedence(self, engine):
        stage = StageDefinition(
            stage_key="X", expected_length=4, min_length=5,
            validation=ValidationRule(type="regex", pattern=r"^9"),
            expected_value="9999",
        )
        assert engine.validate_digits(stage, "") == InputErrorCode.NO_INPUT
        assert engine.validate_digits(stage, "123") == InputErrorCode.LENGTH_MISMATCH
        # length satisfied, min_length checked next
        assert engine.validate_digits(stage, "1234") == InputErrorCode.TOO_SHORT

    def test_min_max_length(self, engine):
        stage = StageDefinition(stage_key="X", min_length=3, max_length=5)
        assert engine.validate_digits(stage, "12") == InputErrorCode.TOO_SHORT
        assert engine.validate_digits(stage, "123456") == InputErrorCode.TOO_LONG
        assert engine.validate_digits(stage, "1234") is None

    def test_pattern_before_value(self, engine):
        stage = StageDefinition(
            stage_key="X", validation=ValidationRule(pattern=r"^9\d+$"), expected_value="9999",
        )
        assert engine.validate_digits(stage, "1999") == InputErrorCode.PATTERN_MISMATCH
        assert engine.validate_digits(stage, "9998") == InputErrorCode.VALUE_MISMATCH
        assert engine.validate_digits(stage, "9999") is None

    def test_range(self, engine):
        stage = StageDefinition(stage_key="X", validation=ValidationRule(type="range", min=1, max=31))
        assert engine.validate_digits(stage, "0") == InputErrorCode.RANGE_MISMATCH
        assert engine.validate_digits(stage, "32") == InputErrorCode.RANGE_MISMATCH
        assert engine.validate_digits(stage, "15") is None

    def test_allow_list(self, engine):
        stage = StageDefinition(
            stage_key="X", validation=ValidationRule(type="allow_list", allowed_values=["1", "2"]),
        )
        assert engine.validate_digits(stage, "3") == InputErrorCode.NOT_ALLOWED
        assert engine.validate_digits(stage, "2") is None

    def test_invalid_pattern_is_ignored(self, engine):
        stage = StageDefinition(stage_key="X", validation=ValidationRule(pattern="[unclosed"))
        assert engine.validate_digits(stage, "123") is None

    def test_feedback_messages(self, engine):
        engine.start_flow("CA1", [StageDefinition(stage_key="PIN", label="PIN", expected_length=4)])
        assert engine.submit("CA1", "").feedback.startswith("I didn't receive any input.")
        assert engine.submit("CA1", "12").feedback.endswith("Please try again.")
        assert engine.submit("CA1", "12").feedback == "After 3 attempts, we couldn't validate your pin."

    def test_success_feedback(self, engine):
        engine.start_flow("CA1", [StageDefinition(stage_key="PIN", expected_length=4)])
        assert engine.submit("CA1", "1234").feedback == "Received 4 digits."

    def test_gather_config(self):
        stage = StageDefinition(stage_key="PIN", label="PIN", expected_length=4, help_prompt="Four digits")
        config = InputStepEngine.gather_config(stage)
        assert config["num_digits"] == 4
        assert config["finish_on_key"] == "#"
        assert config["prompt"] == "Please enter your PIN."
        assert config["help_prompt"] == "Four digits"


# ══════════════════════════════════════════════════════════════
#  CONFIG
# ══════════════════════════════════════════════════════════════

class TestStageConfig:

    def test_from_config_loose_keys(self):
        stage = StageDefinition.from_config({
            "stageKey": "dob", "numDigits": "8", "maxRetries": 2,
            "validation": {"type": "lookup", "allowedValues": [19900101]},
            "promptText": "Enter your date of birth", "isSensitive": False,
        })
        assert stage.stage_key == "DOB"
        assert stage.expected_length == 8
        assert stage.max_retries == 2
        assert stage.validation.type == "allow_list"
        assert stage.validation.allowed_values == ["19900101"]
        assert stage.prompt == "Enter your date of birth"
        assert stage.sensitive is False

    def test_from_config_defaults(self):
        stage = StageDefinition.from_config({"label": "Zip Code", "pattern": r"^\d{5}$"}, default_max_retries=5)
        assert stage.stage_key == "ZIP CODE"
        assert stage.max_retries == 5
        assert stage.validation.pattern == r"^\d{5}$"

    def test_sequence_in_order(self):
        stages = load_stage_definitions({
            "collect_input_sequence": [
                {"stage": "account", "expected_length": 6},
                {"stage": "pin", "expected_value": "1234"},
            ],
        })
        assert [s.stage_key for s in stages] == ["ACCOUNT", "PIN"]
        assert stages[1].expected_value == "1234"

    def test_unnamed_sequence_entries(self):
        stages = load_stage_definitions({"input_sequence": [{"expected_length": 4}, {"expected_length": 2}]})
        assert [s.stage_key for s in stages] == ["STEP_1", "STEP_2"]

    def test_expectations_merge_into_sequence(self):
        stages = load_stage_definitions({
            "collect_input_sequence": [{"stage": "PIN", "expected_length": 4}],
            "dtmf_expectations": {"pin": "4321"},
        })
        assert len(stages) == 1
        assert stages[0].expected_length == 4
        assert stages[0].expected_value == "4321"

    def test_otp_fallback(self):
        stages = load_stage_definitions({"expected_otp": "482913"})
        assert len(stages) == 1
        assert stages[0].stage_key == "OTP"
        assert stages[0].expected_length == 6
        assert stages[0].expected_value == "482913"

    def test_json_metadata(self):
        stages = load_stage_definitions('{"otp_code": "1111"}')
        assert stages[0].expected_value == "1111"

    def test_unparseable_metadata(self):
        assert load_stage_definitions("{not json") == []

    def test_nothing_configured(self):
        assert load_stage_definitions({}) == []
        assert load_stage_definitions(None) == []
