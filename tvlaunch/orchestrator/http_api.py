from __future__ import annotations
import json, logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .eventbus import EventBus
from .fsm import Detector

log = logging.getLogger(__name__)

class TriggerStatsOut(BaseModel):
    fired: int
    failed: int
    last_ok: Optional[bool] = None
    last_at: Optional[str] = None

class StateOut(BaseModel):
    device: str
    alive: Optional[bool] = None
    phase: Optional[str] = None
    changed_at: Optional[str] = None
    last_probe_error: Optional[str] = None
    wake_listener: Optional[str] = None
    wake_hints: int = 0
    trigger: TriggerStatsOut

def _snapshot(detector: Detector) -> Dict[str, Any]:
    data = detector.state.to_dict()
    data["device"] = str(detector.prober.endpoint)
    data["wake_listener"] = detector.listener.group if detector.listener else None
    data["wake_hints"] = detector.wake_hints
    return data

def _frame(kind: str, data: Any) -> str:
    return f"event: {kind}\ndata: {json.dumps(data)}\n\n"

async def event_stream(
    bus: EventBus,
    detector: Detector,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """SSE frames: one snapshot, then every bus event until the client goes away."""
    yield _frame("state", _snapshot(detector))
    async for ev in bus.subscribe():
        if await is_disconnected():
            break
        yield _frame(ev.get("type", "state"), ev.get("data"))

def make_app(bus: EventBus, detector: Detector) -> FastAPI:
    """Read-only status surface; nothing here writes detector state."""
    app = FastAPI(title="tvlaunch")

    @app.get("/healthz")
    async def healthz():
        return {"ok": detector.phase is not None}

    @app.get("/api/state", response_model=StateOut)
    async def get_state():
        return _snapshot(detector)

    @app.get("/events")
    async def sse(req: Request):
        return StreamingResponse(event_stream(bus, detector, req.is_disconnected), media_type="text/event-stream")

    return app
