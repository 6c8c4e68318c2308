from __future__ import annotations

import asyncio
import socket
import sys
from typing import Callable, List, Optional

import pytest

from tvlaunch.orchestrator.adapters.probe import Endpoint, LivenessProber
from tvlaunch.orchestrator.adapters.trigger import TriggerResult

linux_only = pytest.mark.skipif(sys.platform != "linux", reason="needs the whole 127/8 on loopback")


class FakeClock:
    """Monotonic clock that only moves when something sleeps or connects."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeWriter:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class ScheduledConnect:
    """Connect stand-in: reachable(t) decides the outcome, each attempt costs ``cost`` seconds."""

    def __init__(self, clock: FakeClock, reachable: Callable[[float], bool], cost: float = 0.0) -> None:
        self.clock = clock
        self.reachable = reachable
        self.cost = cost
        self.calls: List[float] = []
        self.writers: List[FakeWriter] = []

    async def __call__(self, host: str, port: int):
        self.calls.append(self.clock.now)
        self.clock.now += self.cost
        await asyncio.sleep(0)
        if not self.reachable(self.clock.now):
            raise ConnectionRefusedError(111, "Connection refused")
        w = FakeWriter()
        self.writers.append(w)
        return None, w


class FakeTrigger:
    def __init__(self, clock: Optional[FakeClock] = None, result: Optional[TriggerResult] = None, exc: Optional[BaseException] = None) -> None:
        self.clock = clock
        self.result = result or TriggerResult(ok=True, returncode=0)
        self.exc = exc
        self.fired_at: List[float] = []

    async def fire(self) -> TriggerResult:
        self.fired_at.append(self.clock.now if self.clock else 0.0)
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_prober(clock: FakeClock):
    def _make(reachable: Callable[[float], bool], timeout: float = 3.0, cost: float = 0.0, host: str = "192.168.1.10"):
        connect = ScheduledConnect(clock, reachable, cost)
        prober = LivenessProber(Endpoint(host, 6095), timeout, connect=connect, clock=clock, sleep=clock.sleep)
        return prober, connect
    return _make


@pytest.fixture
def udp_receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.setblocking(False)
    yield sock
    sock.close()


@pytest.fixture
def udp_sender():
    socks: List[socket.socket] = []

    def _make(ip: str) -> socket.socket:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.bind((ip, 0))
        socks.append(s)
        return s

    yield _make
    for s in socks:
        s.close()
