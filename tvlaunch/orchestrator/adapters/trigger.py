from __future__ import annotations
import asyncio, contextlib, logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

import httpx

log = logging.getLogger(__name__)

# Xiaomi TV HTTP controller; the same URL the curl form of the trigger hits.
CONTROLLER_PATH = "/controller"


@dataclass
class TriggerResult:
    ok: bool
    returncode: Optional[int] = None
    stdout: bytes = b""
    stderr: bytes = b""
    detail: str = ""


class Trigger(Protocol):
    async def fire(self) -> TriggerResult: ...


def startapp_url(host: str, port: int, package: str) -> str:
    if ":" in host:
        host = f"[{host}]"
    url = httpx.URL(
        f"http://{host}:{port}{CONTROLLER_PATH}",
        params={"action": "startapp", "type": "packagename", "packagename": package},
    )
    return str(url)


class CommandTrigger:
    """Run a fixed argv once per call. Spawn failures raise OSError."""

    def __init__(self, argv: Sequence[str], *, timeout: Optional[float] = None) -> None:
        if not argv:
            raise ValueError("trigger command is empty")
        self.argv: Tuple[str, ...] = tuple(argv)
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"CommandTrigger({' '.join(self.argv)!r})"

    async def fire(self) -> TriggerResult:
        proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with asyncio.timeout(self._timeout):
                stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            stdout, stderr = await proc.communicate()
            return TriggerResult(
                ok=False,
                returncode=proc.returncode,
                stdout=stdout or b"",
                stderr=stderr or b"",
                detail=f"timed out after {self._timeout:.1f}s",
            )

        return TriggerResult(
            ok=proc.returncode == 0,
            returncode=proc.returncode,
            stdout=stdout or b"",
            stderr=stderr or b"",
        )


class HttpTrigger:
    """GET the launch URL; any 2xx counts as success."""

    def __init__(self, url: str, *, timeout: Optional[float] = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.url = url
        self._timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"HttpTrigger({self.url!r})"

    async def fire(self) -> TriggerResult:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as cli:
                r = await cli.get(self.url)
        except httpx.HTTPError as exc:
            return TriggerResult(ok=False, detail=f"{type(exc).__name__}: {exc}")
        return TriggerResult(
            ok=r.is_success,
            returncode=r.status_code,
            stdout=r.content,
            detail=r.reason_phrase,
        )
