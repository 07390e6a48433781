"""Pydantic schemas for bus location sharing."""

from __future__ import annotations

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr

from bustrack.records import BusInfo, LocationData, ShareRecord


class ShareCreateRequest(BaseModel):
    """Request body for creating a share link."""

    booking_id: str = Field(min_length=1)
    bus_info: BusInfo = Field(default_factory=BusInfo)
    # Raw user input is accepted without coercion; booleans, bad or
    # non-positive values mean the default
    expiry_minutes: StrictInt | StrictFloat | StrictStr | StrictBool | None = None


class ShareCreateResponse(BaseModel):
    """Response after creating a share link."""

    token: str
    share_link: str
    expiry_time: int
    message: str


class ShareResponse(BaseModel):
    """A live share, as returned to link holders and the owner."""

    token: str
    share_link: str
    booking_id: str
    bus_info: BusInfo
    created_at: int
    expiry_time: int
    remaining_ms: int
    location_data: LocationData | None = None

    @classmethod
    def from_record(cls, record: ShareRecord, share_link: str, now: int) -> ShareResponse:
        return cls(
            token=record.token,
            share_link=share_link,
            booking_id=record.booking_id,
            bus_info=record.bus_info,
            created_at=record.created_at,
            expiry_time=record.expiry_time,
            remaining_ms=record.remaining_ms(now),
            location_data=record.location_data,
        )


class ShareList(BaseModel):
    shares: list[ShareResponse]


class ShareCleanupResponse(BaseModel):
    active: int
