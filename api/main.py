"""
FastAPI Application — Provider webhooks + health.

Provides:
- Call status webhook (Twilio-style form or JSON), always acknowledged
- Answering-machine detection webhook
- Keypad (DTMF) webhook driving the input step engine
- Call registration and inspection
- Health: dispatch queue, delivery channel, in-memory call state
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from channels.base import DeliveryChannel
from channels.factory import create_delivery_channel
from config.settings import Settings, get_settings
from context.hints import CallHintDetector
from context.input_engine import InputErrorCode, InputResult, InputStepEngine
from context.input_service import KeypadInputService
from core.dedup import EventDeduplicator
from core.reconciler import WebhookReconciler
from database.store_base import BaseCallStore
from database.store_factory import create_store, reset_store
from job_queue.dispatcher import NotificationDispatcher
from models.schemas import CallSession
from templates.renderer import NotificationRenderer

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class CallServices:
    settings: Settings
    store: BaseCallStore
    engine: InputStepEngine
    hints: CallHintDetector
    input_service: KeypadInputService
    reconciler: WebhookReconciler
    channel: DeliveryChannel
    dispatcher: NotificationDispatcher


def build_services(settings: Settings) -> CallServices:
    store = create_store({
        "store_backend": settings.database.store_backend,
        "url": settings.database.url,
    })
    engine = InputStepEngine(mask_char=settings.input.mask_char)
    hints = CallHintDetector(store)
    dedup = EventDeduplicator(
        bucket_seconds=settings.webhooks.dedup_bucket_seconds,
        ttl_seconds=settings.webhooks.dedup_ttl_seconds,
        max_size=settings.webhooks.dedup_max_size,
    )
    channel = create_delivery_channel(settings)
    return CallServices(
        settings=settings,
        store=store,
        engine=engine,
        hints=hints,
        input_service=KeypadInputService(
            engine, store, hints, default_max_retries=settings.input.default_max_retries,
        ),
        reconciler=WebhookReconciler(store, dedup, hints=hints, input_engine=engine),
        channel=channel,
        dispatcher=NotificationDispatcher(
            store, channel, NotificationRenderer(), settings.notifications,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    services = build_services(settings)
    await services.store.initialize()
    await services.dispatcher.start()
    app.state.services = services

    logger.info("callsession_started",
                store=type(services.store).__name__,
                channel=services.channel.name)
    yield

    await services.dispatcher.stop()
    await services.channel.close()
    await services.store.close()
    reset_store()
    logger.info("callsession_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="CallSession API",
    description="Call-session state: webhooks, keypad input, hints, notifications",
    version="1.0.0",
    lifespan=lifespan,
)


def _services(request: Request) -> CallServices:
    return request.app.state.services


async def _read_body(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        body = await request.json()
        return body if isinstance(body, dict) else {}
    return dict(await request.form())


def _call_id(body: dict[str, Any]) -> str:
    return str(body.get("CallSid") or body.get("CallUUID") or body.get("call_id") or "")


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class CallCreateRequest(BaseModel):
    call_id: str
    destination: Optional[str] = None
    provider: str = "twilio"
    metadata: dict[str, Any] = {}


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    services = _services(request)
    dispatcher = await services.dispatcher.health_check()
    return {
        "status": dispatcher["status"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "notifications": dispatcher,
        "active_hint_states": services.hints.active_calls,
        "active_input_flows": services.engine.active_calls,
    }


# ══════════════════════════════════════════════════════════════
#  PROVIDER WEBHOOKS
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/status")
async def status_webhook(request: Request):
    """
    Call status callback. Always 200: storage problems are reported in the
    body so the provider does not start a retry storm.
    """
    try:
        body = await _read_body(request)
    except Exception as e:
        logger.warning("status_webhook_unparseable", error=str(e))
        return {"success": True, "error": "unparseable body"}
    return await _services(request).reconciler.process_webhook(_call_id(body), body)


@app.post("/webhooks/amd")
async def amd_webhook(request: Request):
    """Asynchronous answering-machine detection result."""
    try:
        body = await _read_body(request)
        call_id = _call_id(body)
        answered_by = body.get("AnsweredBy") or body.get("answered_by")
        if not call_id or not answered_by:
            return {"success": True, "error": "missing call id or AnsweredBy"}
        classified = await _services(request).reconciler.record_answered_by(call_id, answered_by)
        return {"success": True, "answered_by": classified.value}
    except Exception as e:
        logger.error("amd_webhook_error", error=str(e))
        return {"success": True, "error": str(e)}


@app.post("/webhooks/keypad")
async def keypad_webhook(request: Request):
    """Digits gathered by the provider for the call's current input stage."""
    services = _services(request)
    try:
        body = await _read_body(request)
    except Exception as e:
        logger.warning("keypad_webhook_unparseable", error=str(e))
        return InputResult(valid=False, error_code=InputErrorCode.INTERNAL_ERROR,
                           feedback="Something went wrong. Please try again.").to_dict()
    call_id = _call_id(body)
    if not call_id:
        raise HTTPException(status_code=400, detail="call id required")

    result = await services.input_service.handle_digits(
        call_id, body.get("Digits") or body.get("digits"),
    )
    response = result.to_dict()
    if result.next_stage is not None:
        response["gather"] = services.engine.gather_config(result.next_stage)
    return response


# ══════════════════════════════════════════════════════════════
#  CALLS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/calls")
async def register_call(req: CallCreateRequest, request: Request):
    services = _services(request)
    if await services.store.get_call(req.call_id):
        raise HTTPException(status_code=409, detail="Call already registered")
    session = await services.store.create_call(CallSession(
        call_id=req.call_id, destination=req.destination,
        provider=req.provider, metadata=req.metadata,
    ))
    return session.model_dump(mode="json")


@app.post("/api/v1/calls/{call_id}/input/start")
async def start_input(call_id: str, request: Request):
    services = _services(request)
    first = await services.input_service.start_collection(call_id)
    if first is None:
        raise HTTPException(status_code=404, detail="No input stages configured for call")
    return {"stage_key": first.stage_key, "gather": services.engine.gather_config(first)}


@app.get("/api/v1/calls/{call_id}")
async def get_call(call_id: str, request: Request):
    services = _services(request)
    call = await services.store.get_call(call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    events = await services.store.get_events(call_id)
    inputs = await services.store.get_call_inputs(call_id)
    hint_state = services.hints.get_state(call_id)
    return {
        "call": call.model_dump(mode="json"),
        "events": [e.model_dump(mode="json") for e in events],
        "inputs": [i.model_dump(mode="json") for i in inputs],
        "input_flow": services.input_service.get_state(call_id),
        "hints": hint_state.to_dict() if hint_state else None,
    }
