"""Shared test fixtures for the call-session core."""
import pytest
from datetime import datetime, timedelta, timezone

from context.hints import CallHintDetector
from context.input_engine import InputStepEngine, StageDefinition, ValidationRule
from context.input_service import KeypadInputService
from core.dedup import EventDeduplicator
from core.reconciler import WebhookReconciler
from database.store_memory import InMemoryCallStore
from models.schemas import CallSession


T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """A fixed instant `seconds` after T0."""
    return T0 + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _reset_singletons():
    from config.settings import reset_settings
    from database.store_factory import reset_store
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def make_call(store):
    async def _make(call_id: str = "CA100", destination: str = "chat-42",
                    started_at: datetime = T0, **metadata) -> CallSession:
        return await store.create_call(CallSession(
            call_id=call_id, destination=destination,
            started_at=started_at, metadata=metadata,
        ))
    return _make


@pytest.fixture
def engine() -> InputStepEngine:
    return InputStepEngine()


@pytest.fixture
def hints(store) -> CallHintDetector:
    return CallHintDetector(store)


@pytest.fixture
def reconciler(store, hints, engine) -> WebhookReconciler:
    return WebhookReconciler(store, EventDeduplicator(), hints=hints, input_engine=engine)


@pytest.fixture
def input_service(engine, store, hints) -> KeypadInputService:
    return KeypadInputService(engine, store, hints)


@pytest.fixture
def account_and_pin() -> list[StageDefinition]:
    """Two-stage flow: a 6-digit account number, then a 4-digit PIN."""
    return [
        StageDefinition(
            stage_key="ACCOUNT", label="Account Number", expected_length=6,
            validation=ValidationRule(type="regex", pattern=r"^\d{6}$"),
        ),
        StageDefinition(stage_key="PIN", label="PIN", expected_length=4, expected_value="4321"),
    ]


@pytest.fixture
def clock():
    """clock(s) → the instant s seconds after a fixed call start."""
    return at
