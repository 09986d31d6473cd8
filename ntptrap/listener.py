"""UDP listener answering NTP client requests and queueing operator alerts.

Every datagram goes through the same cycle: receive into a pooled buffer,
copy out, validate size and mode, reply, enrich, offer the alert to the
bounded queue. Nothing in that cycle may stop the loop; only the shared stop
event does.
"""
from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional, Protocol, Tuple

from . import codec
from .alerts import format_alert
from .dispatcher import NotificationQueue
from .geoip import GeoIP, GeoIPError
from .state import ServiceState

LOGGER = logging.getLogger(__name__)

# One spare byte so an oversize datagram is not truncated into a valid-looking one.
RECV_BUFFER_SIZE = codec.PACKET_SIZE + 1


class ListenerError(RuntimeError):
    """Raised when the UDP socket cannot be opened or bound."""


class GeoLookup(Protocol):
    def lookup(self, ip: str) -> GeoIP:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True)
class Datagram:
    data: bytes
    address: Tuple[Any, ...]

    @property
    def ip(self) -> str:
        """Requester address, with IPv4-mapped IPv6 reported as plain IPv4."""
        host = self.address[0]
        try:
            parsed = ipaddress.ip_address(host)
        except ValueError:
            return host
        mapped = getattr(parsed, "ipv4_mapped", None)
        return str(mapped) if mapped else host


class BufferPool:
    """Reusable receive buffers; a borrowed buffer is never shared."""

    def __init__(self, size: int = 4, buffer_size: int = RECV_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size
        self._free: List[bytearray] = [bytearray(buffer_size) for _ in range(size)]
        self._lock = threading.Lock()

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._free)

    def acquire(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
        return bytearray(self.buffer_size)

    def release(self, buffer: bytearray) -> None:
        if len(buffer) != self.buffer_size:
            raise ValueError("buffer does not belong to this pool")
        with self._lock:
            if any(existing is buffer for existing in self._free):
                raise ValueError("buffer released twice")
            self._free.append(buffer)

    @contextmanager
    def borrow(self) -> Iterator[bytearray]:
        buffer = self.acquire()
        try:
            yield buffer
        finally:
            self.release(buffer)


class RequestListener:
    """Owns the trap's UDP socket."""

    def __init__(
        self,
        port: int,
        alerts: NotificationQueue,
        geo: Optional[GeoLookup] = None,
        *,
        host: str = "",
        logger: Optional[logging.Logger] = None,
        pool: Optional[BufferPool] = None,
        poll_interval_s: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.alerts = alerts
        self.geo = geo
        self.logger = logger or LOGGER
        self.pool = pool or BufferPool()
        self.poll_interval_s = poll_interval_s
        self._clock = clock
        self._sock: Optional[socket.socket] = None
        self._state = ServiceState.STOPPED

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def address(self) -> Tuple[str, int]:
        if self._sock is None:
            raise ListenerError("Listener is not bound")
        host, port = self._sock.getsockname()[:2]
        return host, port

    def _bind_targets(self) -> List[Tuple[int, Tuple[Any, ...], bool]]:
        """Address families to try in order as ``(family, sockaddr, dual_stack)``."""
        targets: List[Tuple[int, Tuple[Any, ...], bool]] = []
        if not self.host and socket.has_ipv6:
            # Wildcard: one IPv6 socket that also accepts IPv4 as ::ffff:a.b.c.d.
            targets.append((socket.AF_INET6, ("::", self.port, 0, 0), True))
        try:
            infos = socket.getaddrinfo(
                self.host or None,
                self.port,
                type=socket.SOCK_DGRAM,
                flags=socket.AI_PASSIVE,
            )
        except socket.gaierror as exc:
            raise ListenerError(f"Unable to resolve bind address {self.host or '*'}: {exc}") from exc
        for family, _, _, _, sockaddr in infos:
            if family in (socket.AF_INET, socket.AF_INET6):
                targets.append((family, sockaddr, False))
        return targets

    def _open(self, family: int, sockaddr: Tuple[Any, ...], dual_stack: bool) -> socket.socket:
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if dual_stack:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(sockaddr)
        except OSError:
            sock.close()
            raise
        return sock

    def bind(self) -> Tuple[str, int]:
        if self._sock is not None:
            return self.address
        error: Optional[OSError] = None
        for family, sockaddr, dual_stack in self._bind_targets():
            try:
                sock = self._open(family, sockaddr, dual_stack)
            except OSError as exc:
                self.logger.debug("Bind attempt on %s failed: %s", sockaddr, exc)
                error = exc
                continue
            break
        else:
            raise ListenerError(f"Unable to bind UDP {self.host or '*'}:{self.port}: {error}") from error
        sock.settimeout(self.poll_interval_s)
        self._sock = sock
        self.logger.info("NTP trap listening on %s port %d", *self.address)
        return self.address

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _receive(self, sock: socket.socket) -> Optional[Datagram]:
        with self.pool.borrow() as buffer:
            try:
                size, address = sock.recvfrom_into(buffer)
            except socket.timeout:
                return None
            # Copy out before the buffer goes back to the pool.
            return Datagram(bytes(buffer[:size]), address)

    def _enrich(self, ip: str) -> Optional[GeoIP]:
        if self.geo is None:
            return None
        try:
            return self.geo.lookup(ip)
        except GeoIPError as exc:
            self.logger.warning("Geolocation unavailable: %s", exc)
        except Exception:
            self.logger.exception("Unexpected geolocation error for %s", ip)
        return None

    def handle(self, datagram: Datagram) -> bool:
        """Process one datagram and return whether a reply was sent."""
        client = f"{datagram.address[0]}:{datagram.address[1]}"
        size = len(datagram.data)
        if size != codec.PACKET_SIZE:
            self.logger.info("Ignoring datagram with invalid size from %s (%d bytes)", client, size)
            return False
        mode = codec.request_mode(datagram.data)
        if mode != codec.MODE_CLIENT:
            self.logger.info("Ignoring non-client NTP packet from %s (mode %d)", client, mode)
            return False

        replied = False
        sock = self._sock
        if sock is None:
            self.logger.warning("Socket closed before replying to %s", client)
        else:
            reply = codec.build_reply(self._clock() if self._clock else None)
            try:
                sock.sendto(reply, datagram.address)
                replied = True
            except OSError as exc:
                self.logger.warning("Failed to send reply to %s: %s", client, exc)

        message = format_alert(datagram.ip, self._enrich(datagram.ip))
        if not self.alerts.offer(message):
            self.logger.warning(
                "Notification queue full (capacity %d), alert for %s dropped",
                self.alerts.capacity,
                datagram.ip,
            )
        return replied

    def serve_forever(self, stop_event: threading.Event) -> None:
        sock = self._sock
        if sock is None:
            self.bind()
            sock = self._sock
        assert sock is not None
        self._state = ServiceState.RUNNING
        try:
            while not stop_event.is_set():
                try:
                    datagram = self._receive(sock)
                except OSError as exc:
                    if stop_event.is_set():
                        break
                    self.logger.warning("UDP receive error: %s", exc)
                    continue
                if datagram is None or stop_event.is_set():
                    continue
                try:
                    self.handle(datagram)
                except Exception:
                    self.logger.exception("Unhandled error while processing datagram from %s", datagram.ip)
        finally:
            self._state = ServiceState.STOPPING
            self.logger.info("Stopping NTP trap listener")
            self.close()
            self._state = ServiceState.STOPPED


__all__ = ["BufferPool", "Datagram", "ListenerError", "RECV_BUFFER_SIZE", "RequestListener"]
