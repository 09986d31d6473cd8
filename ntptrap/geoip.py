"""ip-api.com lookups used to enrich trap alerts."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import requests

DEFAULT_ENDPOINT = "http://ip-api.com/json/"
LOOKUP_FIELDS = "status,message,country,city,as,isp"


class GeoIPError(RuntimeError):
    """Raised when the lookup service cannot enrich an address."""

    def __init__(self, ip: str, detail: str) -> None:
        super().__init__(f"GeoIP lookup for {ip} failed: {detail}")
        self.ip = ip
        self.detail = detail


@dataclass(slots=True, frozen=True)
class GeoIP:
    country: str = ""
    city: str = ""
    asn: str = ""
    isp: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "GeoIP":
        def _field(key: str) -> str:
            value = payload.get(key)
            return str(value).strip() if value is not None else ""

        return cls(
            country=_field("country"),
            city=_field("city"),
            asn=_field("as"),
            isp=_field("isp"),
        )


class GeoIPClient:
    """Single-shot lookups: no retry, no cache, transport default timeout."""

    def __init__(
        self,
        base_url: str = DEFAULT_ENDPOINT,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.session = session or requests.Session()
        self.timeout = timeout

    def lookup(self, ip: str) -> GeoIP:
        url = f"{self.base_url}{ip}"
        try:
            response = self.session.get(url, params={"fields": LOOKUP_FIELDS}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise GeoIPError(ip, str(exc)) from exc

        if response.status_code != 200:
            raise GeoIPError(ip, f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GeoIPError(ip, "response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise GeoIPError(ip, "unexpected response body")
        # ip-api answers 200 with status=fail for private and reserved ranges.
        if payload.get("status") == "fail":
            raise GeoIPError(ip, str(payload.get("message") or "lookup refused"))
        return GeoIP.from_payload(payload)


__all__ = ["GeoIP", "GeoIPClient", "GeoIPError", "LOOKUP_FIELDS"]
