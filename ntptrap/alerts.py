"""Display-ready alert text pushed to the notification queue."""
from __future__ import annotations

from typing import Optional

from .geoip import GeoIP

UNKNOWN_LOCATION = "location unknown"


def format_alert(ip: str, geo: Optional[GeoIP]) -> str:
    if geo is None:
        return f"NTP sync from client: {ip} ({UNKNOWN_LOCATION})"
    return (
        f"NTP sync from client: {ip}\n"
        f"Country: {geo.country}\n"
        f"City: {geo.city}\n"
        f"ASN: {geo.asn}\n"
        f"ISP: {geo.isp}"
    )


__all__ = ["UNKNOWN_LOCATION", "format_alert"]
