from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from tvlaunch.orchestrator.adapters.probe import Endpoint, LivenessProber
from tvlaunch.orchestrator.eventbus import EventBus
from tvlaunch.orchestrator.fsm import AWAITING_ON, Detector
from tvlaunch.orchestrator.http_api import event_stream, make_app

from conftest import FakeTrigger


def _client():
    prober = LivenessProber(Endpoint("192.168.1.10", 6095), 3.0)
    det = Detector(prober, FakeTrigger())
    return det, TestClient(make_app(EventBus(), det))


def test_healthz_waits_for_first_probe():
    det, client = _client()
    assert client.get("/healthz").json() == {"ok": False}
    det.state.phase = AWAITING_ON
    assert client.get("/healthz").json() == {"ok": True}


def test_state_snapshot():
    det, client = _client()
    det.state.alive = False
    det.state.phase = AWAITING_ON
    det.state.trigger.fired = 2

    body = client.get("/api/state").json()
    assert body["device"] == "192.168.1.10:6095"
    assert body["alive"] is False
    assert body["phase"] == "awaiting_on"
    assert body["wake_listener"] is None
    assert body["wake_hints"] == 0
    assert body["trigger"]["fired"] == 2
    assert body["trigger"]["failed"] == 0


def _parse(frame: str):
    head, data = frame.rstrip("\n").split("\n", 1)
    assert head.startswith("event: ") and data.startswith("data: ")
    return head[len("event: "):], json.loads(data[len("data: "):])


async def test_event_stream_snapshot_then_detector_events(make_prober):
    bus = EventBus()
    prober, _ = make_prober(lambda t: t >= 3.0)
    trigger = FakeTrigger()
    det = Detector(prober, trigger, bus=bus)
    gone = False

    async def is_disconnected():
        return gone

    frames = event_stream(bus, det, is_disconnected)
    kind, snap = _parse(await frames.__anext__())
    assert kind == "state"
    assert snap["device"] == "192.168.1.10:6095"
    assert snap["phase"] is None

    pending = asyncio.create_task(frames.__anext__())
    for _ in range(10):
        if bus.subscriber_count:
            break
        await asyncio.sleep(0)
    assert bus.subscriber_count == 1

    await det.start()
    await det.step()

    got = [_parse(await pending)]
    for _ in range(4):
        got.append(_parse(await frames.__anext__()))

    assert [k for k, _ in got] == ["state", "phase", "state", "trigger", "phase"]
    assert got[0][1]["alive"] is False
    assert got[1][1] == {"phase": "awaiting_on"}
    assert got[2][1]["alive"] is True
    assert got[3][1] == {"ok": True, "code": 0, "detail": ""}
    assert got[4][1] == {"phase": "awaiting_off"}

    gone = True
    await bus.publish({"type": "phase", "data": {"phase": "awaiting_on"}})
    with pytest.raises(StopAsyncIteration):
        await frames.__anext__()
    await frames.aclose()


def test_events_route_is_mounted():
    _, client = _client()
    assert "/events" in {r.path for r in client.app.routes}
