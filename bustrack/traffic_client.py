"""Async client for the road traffic API used by bus tracking.

Fetches congestion along a route, nearby incidents, traffic-aware ETAs and
alternative routes, and maps the raw responses to small dataclasses.  Every
lookup returns ``None`` on any HTTP or parsing error so callers can fall back
to cached data.

The API is keyed; both the base URL and the key come from configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from bustrack.records import Coordinates

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_S = 10.0
TRAFFIC_MODEL = "best_guess"
DEFAULT_INCIDENT_RADIUS_M = 5000

_PARSE_ERRORS = (ValueError, KeyError, IndexError, TypeError, AttributeError)


@dataclass
class TrafficSegment:
    start_point: Any
    end_point: Any
    congestion_level: str | None
    speed_kmh: float | None


@dataclass
class TrafficSummary:
    """Congestion along one route."""

    congestion_level: str
    speed_factor: float
    delay_minutes: int
    segments: list[TrafficSegment] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Plain-dict form for the offline cache."""
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TrafficSummary:
        return cls(
            congestion_level=str(payload["congestion_level"]),
            speed_factor=float(payload["speed_factor"]),
            delay_minutes=int(payload["delay_minutes"]),
            segments=[TrafficSegment(**s) for s in payload.get("segments", [])],
        )


@dataclass
class TrafficIncident:
    id: str | None
    type: str | None
    severity: str | None
    description: str | None
    location: Coordinates
    start_time: str | None = None
    end_time: str | None = None


@dataclass
class TrafficEta:
    duration_s: float | None
    duration_in_traffic_s: float | None
    distance_m: float | None
    arrival_time: str | None


@dataclass
class AlternativeRoute:
    distance_m: float | None
    duration_s: float | None
    duration_in_traffic_s: float | None
    polyline: str | None
    summary: str | None


# ---------------------------------------------------------------------------
# Response processing
# ---------------------------------------------------------------------------


def congestion_level(speed_factor: float) -> str:
    """Bucket a speed factor (actual / free-flow speed) into a level."""
    if speed_factor > 0.8:
        return "low"
    if speed_factor > 0.6:
        return "moderate"
    if speed_factor > 0.3:
        return "high"
    return "severe"


def calculate_delay_minutes(data: dict[str, Any]) -> int:
    """Extra minutes caused by traffic versus the free-flow duration."""
    normal = float(data.get("duration") or 0)
    in_traffic = float(data.get("duration_in_traffic") or normal)
    return round((in_traffic - normal) / 60)


def process_traffic_data(data: dict[str, Any]) -> TrafficSummary:
    speed_factor = float(data.get("speed_factor") or 1.0)
    return TrafficSummary(
        congestion_level=congestion_level(speed_factor),
        speed_factor=speed_factor,
        delay_minutes=calculate_delay_minutes(data),
        segments=[
            TrafficSegment(
                start_point=seg.get("start_point"),
                end_point=seg.get("end_point"),
                congestion_level=seg.get("congestion_level"),
                speed_kmh=seg.get("speed_kmh"),
            )
            for seg in data.get("segments") or []
        ],
    )


def process_incident_data(data: dict[str, Any]) -> list[TrafficIncident]:
    return [
        TrafficIncident(
            id=inc.get("id"),
            type=inc.get("type"),
            severity=inc.get("severity"),
            description=inc.get("description"),
            location=Coordinates(latitude=inc["latitude"], longitude=inc["longitude"]),
            start_time=inc.get("start_time"),
            end_time=inc.get("end_time"),
        )
        for inc in data.get("incidents") or []
    ]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TrafficClient:
    """Thin async wrapper around the traffic REST endpoints."""

    def __init__(self, base_url: str, api_key: str, timeout_s: float = REQUEST_TIMEOUT_S) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s

    async def _get_json(self, path: str, params: dict[str, str]) -> dict[str, Any] | None:
        url = f"{self.base_url}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.get(url, params={"key": self.api_key, **params})
                response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Traffic API returned status %d for %s",
                exc.response.status_code,
                path,
            )
            return None
        except (httpx.RequestError, ValueError) as exc:
            logger.warning("Traffic API request to %s failed: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Traffic API returned a non-object body for %s", path)
            return None
        return data

    async def get_traffic_along_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        waypoints: Sequence[Coordinates] = (),
    ) -> TrafficSummary | None:
        data = await self._get_json(
            "route",
            {
                "origin": origin.as_key(),
                "destination": destination.as_key(),
                "waypoints": "|".join(wp.as_key() for wp in waypoints),
                "traffic_model": TRAFFIC_MODEL,
            },
        )
        if data is None:
            return None
        try:
            return process_traffic_data(data)
        except _PARSE_ERRORS as exc:
            logger.warning("Malformed traffic route response: %s", exc)
            return None

    async def get_traffic_incidents(
        self, location: Coordinates, radius_m: int = DEFAULT_INCIDENT_RADIUS_M
    ) -> list[TrafficIncident] | None:
        data = await self._get_json(
            "incidents", {"location": location.as_key(), "radius": str(radius_m)}
        )
        if data is None:
            return None
        try:
            return process_incident_data(data)
        except _PARSE_ERRORS as exc:
            logger.warning("Malformed traffic incident response: %s", exc)
            return None

    async def calculate_eta(
        self,
        origin: Coordinates,
        destination: Coordinates,
        departure_time: str = "now",
    ) -> TrafficEta | None:
        data = await self._get_json(
            "eta",
            {
                "origin": origin.as_key(),
                "destination": destination.as_key(),
                "departure_time": departure_time,
                "traffic_model": TRAFFIC_MODEL,
            },
        )
        if data is None:
            return None
        return TrafficEta(
            duration_s=data.get("duration"),
            duration_in_traffic_s=data.get("duration_in_traffic"),
            distance_m=data.get("distance"),
            arrival_time=data.get("arrival_time"),
        )

    async def get_alternative_routes(
        self, origin: Coordinates, destination: Coordinates
    ) -> list[AlternativeRoute] | None:
        data = await self._get_json(
            "routes",
            {
                "origin": origin.as_key(),
                "destination": destination.as_key(),
                "alternatives": "true",
                "traffic_model": TRAFFIC_MODEL,
            },
        )
        if data is None:
            return None
        try:
            return [
                AlternativeRoute(
                    distance_m=route.get("distance"),
                    duration_s=route.get("duration"),
                    duration_in_traffic_s=route.get("duration_in_traffic"),
                    polyline=route.get("overview_polyline"),
                    summary=route.get("summary"),
                )
                for route in data["routes"]
            ]
        except _PARSE_ERRORS as exc:
            logger.warning("Malformed alternative routes response: %s", exc)
            return None
