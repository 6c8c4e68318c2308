"""Configuration from environment variables, overridable on the command line."""

from __future__ import annotations

import argparse
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

from .errors import ConfigError

DEFAULT_TV_PORT = 6095
DEFAULT_PROBE_TIMEOUT_MS = 3000
DEFAULT_TRIGGER_TIMEOUT_MS = 30000


def _getenv_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = (env.get(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {v!r}") from exc


def _getenv_str(env: Mapping[str, str], name: str) -> Optional[str]:
    return (env.get(name) or "").strip() or None


@dataclass(frozen=True)
class Config:
    # All fields are passed explicitly by Config.load().
    device_address: str
    device_port: int
    probe_timeout_ms: int

    wake_group: Optional[str]
    wake_iface: Optional[str]
    wake_timeout_ms: int

    package_name: Optional[str]
    trigger_cmd: Optional[Tuple[str, ...]]
    trigger_timeout_ms: int

    http_host: str
    http_port: int

    log_level: str

    @property
    def probe_timeout(self) -> float:
        return self.probe_timeout_ms / 1000.0

    @property
    def wake_timeout(self) -> Optional[float]:
        """None means wait for a wake datagram indefinitely."""
        return self.wake_timeout_ms / 1000.0 if self.wake_timeout_ms > 0 else None

    @property
    def trigger_timeout(self) -> Optional[float]:
        return self.trigger_timeout_ms / 1000.0 if self.trigger_timeout_ms > 0 else None

    @staticmethod
    def parser(env: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
        env = os.environ if env is None else env
        p = argparse.ArgumentParser(
            prog="tvlaunch",
            description="Launch an app on the TV every time it is switched on.",
        )
        p.add_argument("--ip", dest="device_address", default=_getenv_str(env, "TV_HOST"),
                       help="TV address, for example 192.168.1.10 (env TV_HOST)")
        p.add_argument("--port", dest="device_port", type=int,
                       default=_getenv_int(env, "TV_PORT", DEFAULT_TV_PORT),
                       help="TV control port probed for liveness (env TV_PORT, default %(default)s)")
        p.add_argument("--timeout", dest="probe_timeout_ms", type=int,
                       default=_getenv_int(env, "PROBE_TIMEOUT_MS", DEFAULT_PROBE_TIMEOUT_MS),
                       help="probe timeout and minimum poll interval in ms (default %(default)s)")
        p.add_argument("--mcast", dest="wake_group", default=_getenv_str(env, "WAKE_GROUP"),
                       help="multicast group ip:port the TV announces itself on, e.g. 239.255.255.250:1900")
        p.add_argument("--iface", dest="wake_iface", default=_getenv_str(env, "WAKE_IFACE"),
                       help="interface for the multicast join (IPv4 address, or IPv6 interface name/index)")
        p.add_argument("--wake-timeout", dest="wake_timeout_ms", type=int,
                       default=_getenv_int(env, "WAKE_TIMEOUT_MS", 0),
                       help="re-probe after this many ms without a wake datagram; 0 waits forever")
        p.add_argument("--package", dest="package_name", default=_getenv_str(env, "TV_PACKAGE"),
                       help="app package name to start, for example org.xbmc.kodi (env TV_PACKAGE)")
        p.add_argument("--command", dest="trigger_cmd", default=_getenv_str(env, "TRIGGER_CMD"),
                       help="command to run on power-on instead of the HTTP start-app call (env TRIGGER_CMD)")
        p.add_argument("--trigger-timeout", dest="trigger_timeout_ms", type=int,
                       default=_getenv_int(env, "TRIGGER_TIMEOUT_MS", DEFAULT_TRIGGER_TIMEOUT_MS),
                       help="kill the trigger after this many ms; 0 disables (default %(default)s)")
        p.add_argument("--http-host", default=env.get("HTTP_HOST", "127.0.0.1"),
                       help="status API bind address (default %(default)s)")
        p.add_argument("--http-port", type=int, default=_getenv_int(env, "HTTP_PORT", 0),
                       help="status API port; 0 disables it (default %(default)s)")
        p.add_argument("--log-level", default=env.get("LOG_LEVEL", "INFO"),
                       help="DEBUG, INFO, WARNING or ERROR (env LOG_LEVEL, default %(default)s)")
        return p

    @staticmethod
    def load(argv: Optional[Sequence[str]] = None, env: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a Config from env + argv and validate everything that does not need the network."""
        ns = Config.parser(env).parse_args(argv)

        trigger_cmd: Optional[Tuple[str, ...]] = None
        if ns.trigger_cmd:
            try:
                trigger_cmd = tuple(shlex.split(ns.trigger_cmd))
            except ValueError as exc:
                raise ConfigError(f"cannot parse trigger command: {exc}") from exc

        cfg = Config(
            device_address=(ns.device_address or "").strip(),
            device_port=ns.device_port,
            probe_timeout_ms=ns.probe_timeout_ms,
            wake_group=ns.wake_group,
            wake_iface=ns.wake_iface,
            wake_timeout_ms=ns.wake_timeout_ms,
            package_name=(ns.package_name or "").strip() or None,
            trigger_cmd=trigger_cmd or None,
            trigger_timeout_ms=ns.trigger_timeout_ms,
            http_host=ns.http_host,
            http_port=ns.http_port,
            log_level=str(ns.log_level).upper(),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not self.device_address:
            raise ConfigError("TV address is required (--ip or TV_HOST)")
        if not 0 < self.device_port < 65536:
            raise ConfigError(f"invalid TV port: {self.device_port}")
        if self.probe_timeout_ms <= 0:
            raise ConfigError(f"probe timeout must be positive, got {self.probe_timeout_ms} ms")
        if self.wake_timeout_ms < 0:
            raise ConfigError(f"wake timeout cannot be negative, got {self.wake_timeout_ms} ms")
        if self.trigger_timeout_ms < 0:
            raise ConfigError(f"trigger timeout cannot be negative, got {self.trigger_timeout_ms} ms")
        if self.wake_iface and not self.wake_group:
            raise ConfigError("--iface only makes sense together with --mcast")
        if not self.trigger_cmd and not self.package_name:
            raise ConfigError("nothing to launch: give --package or --command")
        if not 0 <= self.http_port < 65536:
            raise ConfigError(f"invalid status API port: {self.http_port}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"unknown log level {self.log_level!r}")
