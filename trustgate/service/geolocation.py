from __future__ import annotations

import math
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Dict, Mapping, Optional, Protocol

import httpx

from trustgate.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoLocation:
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "city": self.city,
            "country": self.country,
            "country_code": self.country_code,
        }


class GeoResolver(Protocol):
    async def locate(self, ip: str) -> Optional[GeoLocation]: ...


def distance_km(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two located points (haversine)."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _norm(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value and value.strip() else None


def is_significantly_different(
    current: GeoLocation, previous: GeoLocation, threshold_km: float = 100.0
) -> bool:
    """Whether two locations should count as different places.

    Coordinates win when both sides have them. Otherwise a different country is
    different, and within one country two known, different cities are different.
    """
    if current.has_coordinates and previous.has_coordinates:
        return distance_km(current, previous) > threshold_km

    current_country = _norm(current.country_code) or _norm(current.country)
    previous_country = _norm(previous.country_code) or _norm(previous.country)
    if current_country and previous_country and current_country != previous_country:
        return True

    current_city, previous_city = _norm(current.city), _norm(previous.city)
    if current_city and previous_city:
        return current_city != previous_city
    return False


def format_location(location: Optional[GeoLocation]) -> str:
    if location is None:
        return "Unknown location"
    parts = [p for p in (location.city, location.country) if p]
    return ", ".join(parts) if parts else "Unknown location"


def is_public_ip(raw: Optional[str]) -> bool:
    if not raw:
        return False
    try:
        addr = ip_address(raw.strip())
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved)


class StaticGeoResolver:
    """Resolver backed by an address/prefix table, for development and tests.

    Keys are full addresses or dotted prefixes (``"203.0.113."``); the longest
    matching key wins.
    """

    def __init__(self, table: Optional[Mapping[str, GeoLocation]] = None) -> None:
        self.table: Dict[str, GeoLocation] = dict(table or {})

    async def locate(self, ip: str) -> Optional[GeoLocation]:
        if ip in self.table:
            return self.table[ip]
        matches = [prefix for prefix in self.table if ip.startswith(prefix)]
        if not matches:
            return None
        return self.table[max(matches, key=len)]


class HttpGeoResolver:
    """Resolver calling a JSON lookup service (ip-api style field names).

    ``url_template`` contains ``{ip}``. Private and loopback addresses are not
    sent upstream.
    """

    def __init__(
        self,
        url_template: str,
        *,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def _parse(payload: dict) -> Optional[GeoLocation]:
        if payload.get("status") == "fail":
            logger.info("geolocation_lookup_failed", reason=payload.get("message"))
            return None
        lat = payload.get("lat", payload.get("latitude"))
        lon = payload.get("lon", payload.get("longitude"))
        location = GeoLocation(
            city=payload.get("city") or None,
            country=payload.get("country") or payload.get("country_name") or None,
            country_code=payload.get("countryCode") or payload.get("country_code") or None,
            latitude=float(lat) if lat is not None else None,
            longitude=float(lon) if lon is not None else None,
        )
        if not (location.city or location.country or location.has_coordinates):
            return None
        return location

    async def locate(self, ip: str) -> Optional[GeoLocation]:
        if not is_public_ip(ip):
            return None
        url = self.url_template.format(ip=ip)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            return self._parse(response.json())
