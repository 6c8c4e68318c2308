from __future__ import annotations
import asyncio, contextlib, ipaddress, logging, socket
from typing import List, Optional

import uvicorn

from ..config import Config
from ..errors import ConfigError
from .eventbus import EventBus
from .fsm import Detector
from .http_api import make_app
from .adapters.probe import Endpoint, LivenessProber, resolve_endpoint
from .adapters.multicast import bind_multicast, parse_group
from .adapters.trigger import CommandTrigger, HttpTrigger, Trigger, startapp_url

log = logging.getLogger(__name__)

def build_trigger(cfg: Config, endpoint: Endpoint) -> Trigger:
    if cfg.trigger_cmd:
        return CommandTrigger(cfg.trigger_cmd, timeout=cfg.trigger_timeout)
    return HttpTrigger(
        startapp_url(endpoint.host, endpoint.port, cfg.package_name or ""),
        timeout=cfg.trigger_timeout,
    )

def build_detector(cfg: Config, bus: Optional[EventBus] = None) -> Detector:
    """
    Everything that can fail because of configuration fails here, before the
    first probe: address resolution, trigger setup and the multicast join.
    """
    family = socket.AF_UNSPEC
    if cfg.wake_group:
        # Wake datagrams are matched on the device IP, so both must be one family.
        group_ip, _ = parse_group(cfg.wake_group)
        family = socket.AF_INET if group_ip.version == 4 else socket.AF_INET6
    endpoint = resolve_endpoint(cfg.device_address, cfg.device_port, family)
    if cfg.wake_group and ipaddress.ip_address(endpoint.host.split("%", 1)[0]).version != group_ip.version:
        raise ConfigError(f"device {endpoint.host} and wake group {cfg.wake_group} are different IP families")
    prober = LivenessProber(endpoint, cfg.probe_timeout)
    trigger = build_trigger(cfg, endpoint)
    listener = bind_multicast(cfg.wake_group, cfg.wake_iface) if cfg.wake_group else None
    log.info(
        "Watching %s (timeout %d ms, wake %s), trigger %r",
        endpoint, cfg.probe_timeout_ms, cfg.wake_group or "polling", trigger,
    )
    return Detector(prober, trigger, listener=listener, wake_timeout=cfg.wake_timeout, bus=bus)

async def main(cfg: Config, stop: Optional[asyncio.Event] = None) -> None:
    bus = EventBus()
    detector = build_detector(cfg, bus)

    tasks: List[asyncio.Task] = [asyncio.create_task(detector.run(), name="detector")]

    if cfg.http_port:
        # log_config=None: uvicorn logs through our root handler.
        server = uvicorn.Server(uvicorn.Config(
            app=make_app(bus, detector),
            host=cfg.http_host,
            port=cfg.http_port,
            log_config=None,
            loop="asyncio",
        ))
        tasks.append(asyncio.create_task(server.serve(), name="http_api"))

    stop = stop or asyncio.Event()
    stopper = asyncio.create_task(stop.wait(), name="stop")
    try:
        done, _ = await asyncio.wait([*tasks, stopper], return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            if t is not stopper and not t.cancelled() and t.exception() is not None:
                raise t.exception()  # type: ignore[misc]
        log.info("Shutting down")
    finally:
        for t in (*tasks, stopper):
            t.cancel()
        with contextlib.suppress(Exception, asyncio.CancelledError):
            await asyncio.gather(*tasks, stopper, return_exceptions=True)
        if detector.listener is not None:
            detector.listener.close()
