"""Wire helpers for the 48-byte NTP packet the trap answers."""
from __future__ import annotations

import struct
from datetime import datetime, timezone
from typing import Dict, Optional

PACKET_SIZE = 48
NTP_DELTA = 2208988800  # seconds between 1900-01-01 and 1970-01-01

MODE_CLIENT = 3
MODE_SERVER = 4

REPLY_HEADER = 0x1C  # leap 0, version 3, mode 4
REQUEST_HEADER = 0x1B  # leap 0, version 3, mode 3

_TRANSMIT_OFFSET = 40
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def request_mode(data: bytes) -> int:
    """Return the 3-bit mode field of byte 0."""
    return data[0] & 0x07


def request_version(data: bytes) -> int:
    return (data[0] >> 3) & 0x07


def is_client_request(data: bytes) -> bool:
    return len(data) == PACKET_SIZE and request_mode(data) == MODE_CLIENT


def _ntp_timestamp(now: datetime) -> tuple[int, int]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = now - _UNIX_EPOCH
    seconds = delta.days * 86400 + delta.seconds
    fraction = (delta.microseconds << 32) // 1_000_000
    return (seconds + NTP_DELTA) & 0xFFFFFFFF, fraction


def build_reply(now: Optional[datetime] = None) -> bytes:
    """Return a fresh server reply stamped with ``now`` (UTC when omitted).

    Only byte 0 and the transmit timestamp are populated; stratum, reference,
    origin and receive fields stay zero.
    """
    seconds, fraction = _ntp_timestamp(now or datetime.now(timezone.utc))
    packet = bytearray(PACKET_SIZE)
    packet[0] = REPLY_HEADER
    struct.pack_into("!II", packet, _TRANSMIT_OFFSET, seconds, fraction)
    return bytes(packet)


def build_request() -> bytes:
    return bytes([REQUEST_HEADER]) + bytes(PACKET_SIZE - 1)


def parse_reply(data: bytes) -> Dict[str, object]:
    """Decode the header and transmit timestamp of a server reply."""
    if len(data) < PACKET_SIZE:
        raise ValueError(f"Incomplete NTP response ({len(data)} bytes)")
    unpacked = struct.unpack("!B B b b 11I", data[:PACKET_SIZE])
    transmit_seconds, transmit_fraction = unpacked[-2], unpacked[-1]
    transmit = transmit_seconds + float(transmit_fraction) / (1 << 32)
    return {
        "leap": unpacked[0] >> 6,
        "version": request_version(data),
        "mode": request_mode(data),
        "stratum": unpacked[1],
        "transmit_seconds": transmit_seconds,
        "transmit_fraction": transmit_fraction,
        "unix_time": transmit - NTP_DELTA,
    }


__all__ = [
    "MODE_CLIENT",
    "MODE_SERVER",
    "NTP_DELTA",
    "PACKET_SIZE",
    "REPLY_HEADER",
    "REQUEST_HEADER",
    "build_reply",
    "build_request",
    "is_client_request",
    "parse_reply",
    "request_mode",
    "request_version",
]
