"""Multicast wake listener: a cheap hint that the TV may have powered on."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import struct
import sys
from typing import Any, Callable, Optional, Tuple, Union

from ...errors import BindError

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
SocketFactory = Callable[..., Any]


def parse_group(text: str) -> Tuple[IPAddress, int]:
    """Parse ``239.255.255.250:1900`` or ``[ff02::c]:1900``."""
    s = (text or "").strip()
    if s.startswith("["):
        host, sep, rest = s[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise BindError(f"invalid multicast address {text!r}")
        port_s = rest[1:]
    else:
        host, sep, port_s = s.rpartition(":")
        if not sep or ":" in host:
            raise BindError(f"invalid multicast address {text!r} (expected ip:port or [ipv6]:port)")

    try:
        ip = ipaddress.ip_address(host)
        port = int(port_s)
    except ValueError as exc:
        raise BindError(f"invalid multicast address {text!r}") from exc

    if not ip.is_multicast:
        raise BindError(f"{ip} is not a multicast address")
    if not 0 < port < 65536:
        raise BindError(f"invalid multicast port in {text!r}")
    return ip, port


def _ipv4_interface(interface: Optional[str]) -> ipaddress.IPv4Address:
    if not interface:
        return ipaddress.IPv4Address("0.0.0.0")
    try:
        iface = ipaddress.ip_address(interface)
    except ValueError as exc:
        raise BindError(f"invalid IPv4 interface address {interface!r}") from exc
    if iface.version != 4:
        raise BindError(f"multicast group is IPv4 but interface {interface!r} is not")
    return iface


def _ipv6_interface(interface: Optional[str]) -> int:
    # IPv6 joins take an interface index, not an address.
    if not interface:
        return 0
    if interface.isdigit():
        return int(interface)
    try:
        ipaddress.IPv4Address(interface)
    except ValueError:
        pass
    else:
        raise BindError(f"multicast group is IPv6 but interface {interface!r} is IPv4")
    try:
        return socket.if_nametoindex(interface)
    except OSError as exc:
        raise BindError(f"unknown network interface {interface!r}") from exc


def bind_address(ip: IPAddress, port: int, scope_id: int = 0, platform: Optional[str] = None) -> tuple:
    """
    Windows refuses a bind to the group address itself, so bind the wildcard
    there. Elsewhere bind the group so the kernel filters for us.
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        host = "::" if ip.version == 6 else "0.0.0.0"
    else:
        host = str(ip)
    if ip.version == 6:
        return (host, port, 0, scope_id)
    return (host, port)


def bind_multicast(
    group: str,
    interface: Optional[str] = None,
    *,
    socket_factory: SocketFactory = socket.socket,
    platform: Optional[str] = None,
) -> "WakeListener":
    """Join ``group`` (on all interfaces unless ``interface`` is given)."""
    ip, port = parse_group(group)

    if ip.version == 4:
        family = socket.AF_INET
        iface4 = _ipv4_interface(interface)
    else:
        family = socket.AF_INET6
        ifindex = _ipv6_interface(interface)

    try:
        sock = socket_factory(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise BindError(f"cannot create socket for {group}: {exc}") from exc

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)

        if ip.version == 4:
            sock.bind(bind_address(ip, port, platform=platform))
            # We only listen; never treat our own traffic as a wake signal.
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
            mreq = ip.packed + iface4.packed
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            where = str(iface4)
        else:
            sock.bind(bind_address(ip, port, ifindex, platform=platform))
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_LOOP, 0)
            mreq = ip.packed + struct.pack("@I", ifindex)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, mreq)
            where = f"ifindex {ifindex}"

        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        raise BindError(f"cannot join multicast group {group}: {exc}") from exc

    log.info("Listening for wake datagrams on %s (%s)", group, where)
    return WakeListener(sock, group=group)


def _sender_ip(addr: Any) -> Optional[IPAddress]:
    host = addr[0] if isinstance(addr, tuple) else addr
    try:
        return ipaddress.ip_address(str(host).split("%", 1)[0])
    except ValueError:
        return None


class WakeListener:
    """Owns one non-blocking UDP socket; filters datagrams by sender IP."""

    def __init__(self, sock: socket.socket, *, group: str = "") -> None:
        self._sock = sock
        self.group = group
        self.dropped = 0

    def __enter__(self) -> "WakeListener":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._sock.fileno() == -1

    def close(self) -> None:
        self._sock.close()

    def drain(self) -> int:
        """Discard whatever is already queued; never blocks."""
        n = 0
        while True:
            try:
                self._sock.recvfrom(65535)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                log.debug("drain on %s stopped: %r", self.group, exc)
                break
            n += 1
        if n:
            log.debug("drained %d stale datagram(s) on %s", n, self.group)
        return n

    async def recv_from_peer(
        self,
        expect_ip: str,
        buffer: Union[bytearray, memoryview],
        timeout: Optional[float] = None,
    ) -> Optional[Tuple[int, Any]]:
        """
        Wait for a datagram sent by ``expect_ip`` and return ``(length, sender)``.
        Datagrams from anyone else are read and thrown away.
        Returns None if ``timeout`` seconds pass first.
        """
        want = ipaddress.ip_address(expect_ip.split("%", 1)[0])
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            if deadline is None:
                n, addr = await self._recvfrom_into(buffer)
            else:
                if deadline <= loop.time():
                    return None
                try:
                    async with asyncio.timeout_at(deadline):
                        n, addr = await self._recvfrom_into(buffer)
                except TimeoutError:
                    return None

            if _sender_ip(addr) == want:
                log.debug("wake datagram from %s (%d bytes)", addr[0], n)
                return n, addr
            self.dropped += 1
            log.debug("ignoring datagram from %s", addr[0] if isinstance(addr, tuple) else addr)

    async def _recvfrom_into(self, buffer: Union[bytearray, memoryview]) -> Tuple[int, Any]:
        try:
            return self._sock.recvfrom_into(buffer)
        except (BlockingIOError, InterruptedError):
            pass

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        fd = self._sock.fileno()

        def _ready() -> None:
            # A cancelled wait must not eat a datagram.
            if fut.done():
                return
            try:
                res = self._sock.recvfrom_into(buffer)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as exc:
                fut.set_exception(exc)
            else:
                fut.set_result(res)

        loop.add_reader(fd, _ready)
        try:
            return await fut
        finally:
            loop.remove_reader(fd)
