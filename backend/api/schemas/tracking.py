"""Pydantic schemas for bus tracking."""

from __future__ import annotations

from dataclasses import asdict

from pydantic import BaseModel

from bustrack.records import Coordinates
from bustrack.tracking import TrackingView


class PositionsUpdate(BaseModel):
    """Latest fix for a booking pushed by the vehicle feed."""

    bus: Coordinates
    destination: Coordinates
    user: Coordinates | None = None


class TrafficSchema(BaseModel):
    congestion_level: str
    speed_factor: float
    delay_minutes: int


class TravelSchema(BaseModel):
    estimated_arrival: str | None
    distance_km: float | None
    minutes_remaining: int | None
    status: str


class TrackingResponse(BaseModel):
    booking_id: str
    offline: bool
    bus_location: Coordinates | None
    destination: Coordinates | None
    user_location: Coordinates | None
    traffic: TrafficSchema | None
    travel: TravelSchema
    last_updated: int | None

    @classmethod
    def from_view(cls, view: TrackingView) -> TrackingResponse:
        travel = view.travel
        return cls(
            booking_id=view.booking_id,
            offline=view.offline,
            bus_location=view.bus_location,
            destination=view.destination,
            user_location=view.user_location,
            traffic=(
                TrafficSchema.model_validate(asdict(view.traffic))
                if view.traffic is not None
                else None
            ),
            travel=TravelSchema(
                estimated_arrival=(
                    travel.estimated_arrival.isoformat() if travel.estimated_arrival else None
                ),
                distance_km=travel.distance_km,
                minutes_remaining=travel.minutes_remaining,
                status=travel.status.value,
            ),
            last_updated=view.last_updated,
        )


class RefreshWaitingResponse(BaseModel):
    booking_id: str
    status: str = "waiting_for_connection"
