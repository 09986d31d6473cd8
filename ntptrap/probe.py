"""Client-side check: send one request to a trap (or any NTP server) and decode the answer."""
from __future__ import annotations

import socket
import time
from dataclasses import asdict, dataclass
from typing import Dict

from . import codec


@dataclass(slots=True)
class ProbeResult:
    host: str
    port: int
    mode: int
    version: int
    stratum: int
    server_time: float
    offset_ms: float
    round_trip_ms: float

    @property
    def ok(self) -> bool:
        return self.mode == codec.MODE_SERVER and abs(self.offset_ms) <= 1000.0

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["ok"] = self.ok
        return payload


def probe(host: str, port: int = 123, timeout: float = 2.0) -> ProbeResult:
    """Return the decoded reply and the offset between the local clock and ``host``."""
    family, _, _, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
    with socket.socket(family, socket.SOCK_DGRAM) as sock:
        sock.settimeout(timeout)
        t1 = time.time()
        sock.sendto(codec.build_request(), address)
        data, _ = sock.recvfrom(codec.PACKET_SIZE)
        t4 = time.time()

    reply = codec.parse_reply(data)
    server_time = float(reply["unix_time"])
    offset = ((server_time - t1) + (server_time - t4)) / 2.0
    return ProbeResult(
        host=host,
        port=port,
        mode=int(reply["mode"]),
        version=int(reply["version"]),
        stratum=int(reply["stratum"]),
        server_time=server_time,
        offset_ms=offset * 1000.0,
        round_trip_ms=(t4 - t1) * 1000.0,
    )


__all__ = ["ProbeResult", "probe"]
