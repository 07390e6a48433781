"""Location sharing endpoints: create, resolve, revoke and sweep share links."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response

from backend.api.dependencies import Services, get_services, get_share_manager
from backend.api.schemas.sharing import (
    ShareCleanupResponse,
    ShareCreateRequest,
    ShareCreateResponse,
    ShareList,
    ShareResponse,
)
from bustrack.records import LocationData
from bustrack.sharing import ShareNotFoundError, ShareTokenManager

logger = logging.getLogger(__name__)

router = APIRouter()

# Public deep-link resolution, mounted at /track so share links resolve as-is
links_router = APIRouter()

_DEFAULT_OPERATOR = "your bus operator"

SharesDep = Annotated[ShareTokenManager, Depends(get_share_manager)]
ServicesDep = Annotated[Services, Depends(get_services)]


@router.post("/create", response_model=ShareCreateResponse)
async def create_share_link(
    body: ShareCreateRequest, services: ServicesDep
) -> ShareCreateResponse:
    """Create a time-limited link exposing the bus location for a booking."""
    shares = services.shares
    expiry = body.expiry_minutes
    if expiry is None or isinstance(expiry, bool):
        expiry = services.settings.default_share_expiry_minutes
    link = await shares.create(body.booking_id, body.bus_info, expiry)
    message = shares.compose_share_message(
        link.share_link, body.bus_info.operator or _DEFAULT_OPERATOR
    )
    return ShareCreateResponse(
        token=link.token,
        share_link=link.share_link,
        expiry_time=link.expiry_time,
        message=message.message,
    )


@router.get("/", response_model=ShareList)
async def list_shares(services: ServicesDep) -> ShareList:
    """List every share that has not expired or been revoked."""
    now = services.clock()
    active = await services.shares.list_active()
    return ShareList(
        shares=[ShareResponse.from_record(a.record, a.share_link, now) for a in active]
    )


@router.post("/cleanup", response_model=ShareCleanupResponse)
async def cleanup_shares(shares: SharesDep) -> ShareCleanupResponse:
    """Sweep expired shares out of storage and the active index."""
    return ShareCleanupResponse(active=await shares.cleanup_expired())


@router.get("/{token}", response_model=ShareResponse)
async def get_share(token: str, services: ServicesDep) -> ShareResponse:
    """Resolve a share token (no auth: holding the token is the grant)."""
    record = await services.shares.get(token)
    if record is None:
        raise HTTPException(status_code=404, detail="Share link not found or expired")
    return ShareResponse.from_record(
        record, services.shares.share_link_for(token), services.clock()
    )


@router.delete("/{token}", status_code=204)
async def revoke_share(token: str, shares: SharesDep) -> Response:
    """Revoke a share. Unknown tokens are accepted silently."""
    await shares.revoke(token)
    return Response(status_code=204)


@router.put("/{token}/location", response_model=ShareResponse)
async def update_share_location(
    token: str, body: LocationData, services: ServicesDep
) -> ShareResponse:
    """Attach the bus's latest position to a live share."""
    try:
        record = await services.shares.update_location(token, body)
    except ShareNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ShareResponse.from_record(
        record, services.shares.share_link_for(token), services.clock()
    )


@links_router.get("/{token}", response_model=ShareResponse)
async def open_share_link(token: str, services: ServicesDep) -> ShareResponse:
    """Deep-link target: ``{share_base_url}{token}`` lands here."""
    record = await services.shares.handle_deep_link(token)
    if record is None:
        raise HTTPException(status_code=404, detail="Share link not found or expired")
    return ShareResponse.from_record(
        record, services.shares.share_link_for(token), services.clock()
    )
