from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .state import DetectorState, Phase
from .eventbus import EventBus
from .adapters.probe import LivenessProber
from .adapters.multicast import WakeListener
from .adapters.trigger import Trigger, TriggerResult

log = logging.getLogger(__name__)

AWAITING_OFF: Phase = "awaiting_off"
AWAITING_ON: Phase = "awaiting_on"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _onoff(alive: Optional[bool]) -> str:
    return "?" if alive is None else ("on" if alive else "off")


class Detector:
    """
    Two-phase power detector for one TV.

    awaiting_off: poll until the control port stops answering.
    awaiting_on:  poll (or wait for a wake datagram and re-probe) until it
                  answers again, then fire the trigger once.

    The state is only ever written from the task running start()/step()/run().
    """

    def __init__(
        self,
        prober: LivenessProber,
        trigger: Trigger,
        *,
        listener: Optional[WakeListener] = None,
        wake_timeout: Optional[float] = None,
        bus: Optional[EventBus] = None,
        bufsize: int = 2048,
    ) -> None:
        self.prober = prober
        self.trigger = trigger
        self.listener = listener
        self.wake_timeout = wake_timeout
        self.bus = bus
        self.state = DetectorState()
        self.wake_hints = 0
        self._buf = bytearray(bufsize)

    @property
    def phase(self) -> Optional[Phase]:
        return self.state.phase

    async def start(self) -> Phase:
        alive = await self.prober.probe()
        log.info("first state [%s]", _onoff(alive))
        await self._set_alive(alive)
        await self._enter(AWAITING_OFF if alive else AWAITING_ON)
        return AWAITING_OFF if alive else AWAITING_ON

    async def step(self) -> Phase:
        """Run the current phase to completion and return the next one."""
        if self.state.phase is None:
            return await self.start()

        if self.state.phase == AWAITING_OFF:
            await self.prober.probe_until(False)
            await self._set_alive(False)
            await self._enter(AWAITING_ON)
            return AWAITING_ON

        await self._wait_on()
        await self._set_alive(True)
        await self._fire()
        await self._enter(AWAITING_OFF)
        return AWAITING_OFF

    async def run(self, cycles: Optional[int] = None) -> None:
        """Loop forever, or until ``cycles`` on-transitions have fired the trigger."""
        if self.state.phase is None:
            await self.start()
        fired = 0
        while cycles is None or fired < cycles:
            if await self.step() == AWAITING_OFF:
                fired += 1

    # ---- phases ----

    async def _wait_on(self) -> None:
        if self.listener is None:
            await self.prober.probe_until(True)
            return

        # Beacons queued while the TV was on are stale.
        self.listener.drain()
        expect_ip = self.prober.endpoint.host
        try:
            while not await self.prober.probe():
                got = await self.listener.recv_from_peer(expect_ip, self._buf, timeout=self.wake_timeout)
                if got is None:
                    log.debug("no wake datagram in %.1fs, re-probing", self.wake_timeout or 0.0)
                else:
                    self.wake_hints += 1
                    log.debug("wake datagram from %s, re-probing", got[1][0])
        except OSError as exc:
            log.warning("wake listener error (%s), polling instead", exc)
            await self.prober.probe_until(True)

    async def _fire(self) -> None:
        stats = self.state.trigger
        stats.fired += 1
        stats.last_at = _now()
        try:
            result = await self.trigger.fire()
        except Exception as exc:
            log.error("exec trigger %r error: %s", self.trigger, exc)
            result = TriggerResult(ok=False, detail=f"{type(exc).__name__}: {exc}")

        if result.ok:
            log.info("exec trigger ok")
        else:
            stats.failed += 1
            log.error(
                "exec trigger failed, code [%s], stdout [%r], stderr [%r] %s",
                result.returncode, result.stdout, result.stderr, result.detail,
            )
        stats.last_ok = result.ok
        await self._publish("trigger", {"ok": result.ok, "code": result.returncode, "detail": result.detail})

    # ---- state ----

    async def _set_alive(self, alive: bool) -> None:
        prev = self.state.alive
        err = self.prober.last_error
        self.state.last_probe_error = None if err is None else repr(err)
        if prev == alive:
            return
        if prev is not None:
            log.info("state changed [%s] -> [%s]", _onoff(prev), _onoff(alive))
        self.state.alive = alive
        self.state.changed_at = _now()
        await self._publish("state", self.state.to_dict())

    async def _enter(self, phase: Phase) -> None:
        self.state.phase = phase
        log.debug("phase -> %s", phase)
        await self._publish("phase", {"phase": phase})

    async def _publish(self, kind: str, data: Dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish({"type": kind, "data": data})
