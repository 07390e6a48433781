"""Bus tracking endpoints: live fixes in, tracking views out."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.api.dependencies import Services, get_services, get_tracking_service
from backend.api.schemas.tracking import (
    PositionsUpdate,
    RefreshWaitingResponse,
    TrackingResponse,
)
from bustrack.tracking import TrackingService, TripPositions

router = APIRouter()

TrackingDep = Annotated[TrackingService, Depends(get_tracking_service)]


@router.put("/{booking_id}/positions", status_code=204)
async def update_positions(
    booking_id: str,
    body: PositionsUpdate,
    services: Annotated[Services, Depends(get_services)],
) -> None:
    """Record the latest fix for a booking's bus."""
    services.feed.update(
        booking_id,
        TripPositions(bus=body.bus, destination=body.destination, user=body.user),
    )


@router.get("/{booking_id}", response_model=TrackingResponse)
async def get_tracking(booking_id: str, tracking: TrackingDep) -> TrackingResponse:
    """Live view when connected, cached view (flagged offline) otherwise."""
    return TrackingResponse.from_view(await tracking.load(booking_id))


@router.post(
    "/{booking_id}/refresh",
    response_model=TrackingResponse,
    responses={202: {"model": RefreshWaitingResponse}},
)
async def refresh_tracking(
    booking_id: str, tracking: TrackingDep
) -> TrackingResponse | JSONResponse:
    """Re-fetch live data; answers 202 while still waiting for a connection."""
    view = await tracking.refresh(booking_id)
    if view is None:
        return JSONResponse(
            status_code=202,
            content=RefreshWaitingResponse(booking_id=booking_id).model_dump(),
        )
    return TrackingResponse.from_view(view)
