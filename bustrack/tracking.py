"""Bus tracking orchestration with offline fallback.

:class:`TrackingService` is what the tracking screen talks to.  When online
it pulls the latest fix for a booking, asks the traffic API about the road
ahead, writes everything through the offline cache and returns a live
:class:`TrackingView`.  When offline (or when the live path cannot produce
data) it rebuilds the view from the cache and flags it as stale, carrying
the capture time so the screen can say how old it is.

Cache layout per booking:

- ``bus_location_{booking_id}``: the bus fix plus the route key it belongs to
- ``route_data_{route_key}``: origin, destination and the rider's position
- ``traffic_data_{route_key}``: the :class:`TrafficSummary` payload
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from bustrack.constants import (
    ARRIVING_DISTANCE_KM,
    BASE_TRAVEL_MINUTES,
    DELAYED_THRESHOLD_MINUTES,
    now_ms,
)
from bustrack.offline import OfflineCacheManager, route_key
from bustrack.records import Coordinates
from bustrack.traffic_client import TrafficClient, TrafficSummary

logger = logging.getLogger(__name__)

_EARTH_RADIUS_KM = 6371.0


class BusStatus(StrEnum):
    ON_TIME = "on_time"
    DELAYED = "delayed"
    ARRIVING = "arriving"
    UNKNOWN = "unknown"


@dataclass
class TripPositions:
    """Latest known positions for one booking."""

    bus: Coordinates
    destination: Coordinates
    user: Coordinates | None = None


@dataclass
class TravelInfo:
    estimated_arrival: datetime | None
    distance_km: float | None
    minutes_remaining: int | None
    status: BusStatus


@dataclass
class TrackingView:
    """Everything the tracking screen renders for one booking."""

    booking_id: str
    offline: bool
    bus_location: Coordinates | None
    destination: Coordinates | None
    user_location: Coordinates | None
    traffic: TrafficSummary | None
    travel: TravelInfo
    last_updated: int | None


def unknown_travel() -> TravelInfo:
    return TravelInfo(
        estimated_arrival=None,
        distance_km=None,
        minutes_remaining=None,
        status=BusStatus.UNKNOWN,
    )


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return _EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(h))


def compute_travel_info(
    bus: Coordinates,
    destination: Coordinates,
    traffic: TrafficSummary | None,
    now: datetime,
) -> TravelInfo:
    """Estimate arrival from a fixed base trip time plus traffic delay."""
    delay = traffic.delay_minutes if traffic is not None else 0
    total_minutes = BASE_TRAVEL_MINUTES + delay
    distance = haversine_km(bus, destination)

    if traffic is None:
        status = BusStatus.UNKNOWN
    elif traffic.delay_minutes > DELAYED_THRESHOLD_MINUTES:
        status = BusStatus.DELAYED
    elif distance < ARRIVING_DISTANCE_KM:
        status = BusStatus.ARRIVING
    else:
        status = BusStatus.ON_TIME

    return TravelInfo(
        estimated_arrival=now + timedelta(minutes=total_minutes),
        distance_km=round(distance, 1),
        minutes_remaining=total_minutes,
        status=status,
    )


class BusPositionFeed:
    """In-memory latest fix per booking, fed by the vehicle telemetry push."""

    def __init__(self) -> None:
        self._positions: dict[str, TripPositions] = {}

    def update(self, booking_id: str, positions: TripPositions) -> None:
        self._positions[booking_id] = positions

    async def fetch(self, booking_id: str) -> TripPositions | None:
        return self._positions.get(booking_id)

    def clear(self) -> None:
        self._positions.clear()


class TrackingService:
    """Load tracking data for a booking, live when possible, cached otherwise."""

    def __init__(
        self,
        offline: OfflineCacheManager,
        feed: BusPositionFeed,
        traffic: TrafficClient | None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.offline = offline
        self.feed = feed
        self.traffic = traffic
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, tz=UTC)

    async def load(self, booking_id: str) -> TrackingView:
        """Build the view for *booking_id*, preferring live data."""
        if await self.offline.is_network_connected():
            view = await self._load_online(booking_id)
            if view is not None:
                return view
            logger.info("Live tracking unavailable for %s, using cache", booking_id)
        return await self._load_offline(booking_id)

    async def refresh(self, booking_id: str) -> TrackingView | None:
        """Re-run the live path; ``None`` means still waiting for a connection."""
        if not self.offline.is_connected:
            logger.info("Still offline, cannot refresh %s", booking_id)
            return None
        view = await self._load_online(booking_id)
        return view if view is not None else await self._load_offline(booking_id)

    async def _load_online(self, booking_id: str) -> TrackingView | None:
        positions = await self.feed.fetch(booking_id)
        if positions is None or self.traffic is None:
            return None

        traffic = await self.traffic.get_traffic_along_route(positions.bus, positions.destination)
        if traffic is None:
            return None

        key = route_key(positions.bus, positions.destination)
        await self.offline.cache_bus_location(
            booking_id, {**positions.bus.model_dump(), "route_key": key}
        )
        await self.offline.cache_route_data(
            key,
            {
                "origin": positions.bus.model_dump(),
                "destination": positions.destination.model_dump(),
                "user_location": positions.user.model_dump() if positions.user else None,
            },
        )
        await self.offline.cache_traffic_data(key, traffic.to_payload())

        return TrackingView(
            booking_id=booking_id,
            offline=False,
            bus_location=positions.bus,
            destination=positions.destination,
            user_location=positions.user,
            traffic=traffic,
            travel=compute_travel_info(positions.bus, positions.destination, traffic, self._now()),
            last_updated=self._clock(),
        )

    async def _load_offline(self, booking_id: str) -> TrackingView:
        empty = TrackingView(
            booking_id=booking_id,
            offline=True,
            bus_location=None,
            destination=None,
            user_location=None,
            traffic=None,
            travel=unknown_travel(),
            last_updated=None,
        )
        entry = await self.offline.get_cached_bus_location(booking_id)
        if entry is None or not isinstance(entry.payload, dict):
            logger.info("No cached bus location available for %s", booking_id)
            return empty

        try:
            bus = Coordinates.model_validate(entry.payload)
        except ValidationError:
            logger.warning("Cached bus location for %s is malformed", booking_id)
            return empty

        view = TrackingView(
            booking_id=booking_id,
            offline=True,
            bus_location=bus,
            destination=None,
            user_location=None,
            traffic=None,
            travel=unknown_travel(),
            last_updated=entry.timestamp,
        )

        key = entry.payload.get("route_key")
        if not key:
            return view
        route = await self.offline.get_cached_route_data(key)
        if route is None:
            return view
        try:
            view.destination, view.user_location = _route_points(route.payload)
        except (ValidationError, KeyError, TypeError):
            logger.warning("Cached route %s is malformed", key)
            return view

        traffic_entry = await self.offline.get_cached_traffic_data(key)
        if traffic_entry is not None:
            try:
                view.traffic = TrafficSummary.from_payload(traffic_entry.payload)
            except (KeyError, TypeError, ValueError):
                logger.warning("Cached traffic for %s is malformed", key)
        if view.destination is not None and view.traffic is not None:
            view.travel = compute_travel_info(bus, view.destination, view.traffic, self._now())
        return view


def _route_points(payload: Any) -> tuple[Coordinates, Coordinates | None]:
    destination = Coordinates.model_validate(payload["destination"])
    user = payload.get("user_location")
    return destination, Coordinates.model_validate(user) if user else None
