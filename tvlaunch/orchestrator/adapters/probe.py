from __future__ import annotations
import asyncio, contextlib, ipaddress, logging, re, socket, time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from ...errors import ConfigError

log = logging.getLogger(__name__)

Connect = Callable[[str, int], Awaitable[Tuple[Any, Any]]]

_LABEL = re.compile(r"(?!-)[A-Za-z0-9-]{1,63}(?<!-)")
_NUMERIC = re.compile(r"[0-9.]+")


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


_FAMILY_VERSION = {socket.AF_INET: 4, socket.AF_INET6: 6}


def resolve_endpoint(address: str, port: int, family: int = socket.AF_UNSPEC) -> Endpoint:
    """Validate the device address once, before any probing.

    Once polling has started a bad address looks exactly like a TV that is
    off, so anything we cannot turn into an IP here is a ConfigError.
    ``family`` pins the result to AF_INET or AF_INET6.
    """
    addr = (address or "").strip()
    if not addr:
        raise ConfigError("device address is empty")
    if not 0 < int(port) < 65536:
        raise ConfigError(f"invalid device port: {port}")

    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        ip = None
    if ip is not None:
        want = _FAMILY_VERSION.get(family)
        if want is not None and ip.version != want:
            raise ConfigError(f"device address {addr} is not IPv{want}")
        return Endpoint(str(ip), int(port))

    # Looks like an IP literal but isn't one: never hand it to the resolver.
    if ":" in addr or _NUMERIC.fullmatch(addr):
        raise ConfigError(f"invalid device address: {address!r}")

    labels = addr[:-1].split(".") if addr.endswith(".") else addr.split(".")
    if len(addr) > 253 or not all(_LABEL.fullmatch(part) for part in labels):
        raise ConfigError(f"invalid device address: {address!r}")

    try:
        infos = socket.getaddrinfo(addr, int(port), family=family, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError) as exc:
        raise ConfigError(f"cannot resolve device address {address!r}: {exc}") from exc
    if not infos:
        raise ConfigError(f"cannot resolve device address {address!r}")

    host = infos[0][4][0]
    log.info("Resolved %s -> %s", addr, host)
    return Endpoint(str(host), int(port))


class LivenessProber:
    """
    TCP connect probe against the TV control port.
    - probe(): one bounded connect, True iff it completes inside the timeout
    - probe_until(expected): poll, at most once per timeout, until probe() == expected
    """

    def __init__(
        self,
        endpoint: Endpoint,
        timeout: float,
        *,
        connect: Optional[Connect] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        if timeout <= 0:
            raise ConfigError(f"probe timeout must be positive, got {timeout}")
        self.endpoint = endpoint
        self.timeout = float(timeout)
        self._connect: Connect = connect or asyncio.open_connection
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.attempts = 0
        self.last_error: Optional[BaseException] = None

    async def probe(self) -> bool:
        self.attempts += 1
        start = self._clock()
        try:
            async with asyncio.timeout(self.timeout):
                _, writer = await self._connect(self.endpoint.host, self.endpoint.port)
        except Exception as exc:
            # A cancel that surfaced as a connect error is still a cancel.
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise asyncio.CancelledError() from exc
            self.last_error = exc
            log.debug("probe %s -> unreachable (%r)", self.endpoint, exc)
            return False

        elapsed = self._clock() - start
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()

        # Strict bound: a connect that needed the whole timeout does not count.
        if elapsed >= self.timeout:
            self.last_error = TimeoutError(f"connect took {elapsed:.3f}s (timeout {self.timeout:.3f}s)")
            log.debug("probe %s -> unreachable (%s)", self.endpoint, self.last_error)
            return False

        self.last_error = None
        log.debug("probe %s -> reachable in %.3fs", self.endpoint, elapsed)
        return True

    async def probe_until(self, expected: bool) -> None:
        while True:
            kick = self._clock()
            if await self.probe() == expected:
                return
            remaining = self.timeout - (self._clock() - kick)
            if remaining > 0:
                await self._sleep(remaining)
