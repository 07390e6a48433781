"""Typed records stored in the key-value store, and their JSON codecs.

All structured state (share records, cache entries, queued offline actions,
the active-share index) crosses the store boundary here.  Field names on the
wire are camelCase to stay compatible with records written by the mobile
client (``bookingId``, ``expiryTime``, ...); Python attributes are snake_case.

Decoding raises :class:`pydantic.ValidationError` on shape drift; callers
treat that the same as a storage read failure.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(_Record):
    """A WGS84 point."""

    latitude: float
    longitude: float

    def as_key(self) -> str:
        """Render as ``"lat,lng"`` for use inside cache keys."""
        return f"{self.latitude},{self.longitude}"


class BusInfo(_Record):
    """Snapshot of the bus being shared, copied at share creation time.

    Extra fields from the booking (seat numbers, plate, ...) are kept as-is.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    operator: str | None = None
    departure_time: str | None = None
    arrival_time: str | None = None
    current_location: Coordinates | None = None
    destination: Coordinates | None = None


class LocationData(_Record):
    """Live location patch attached to a share after creation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    latitude: float
    longitude: float
    heading_deg: float | None = None
    speed_kmh: float | None = None
    last_updated: int | None = None


class ShareRecord(_Record):
    """A time-bounded, revocable share of a booking's bus location."""

    token: str
    booking_id: str
    bus_info: BusInfo
    created_at: int
    expiry_time: int
    location_data: LocationData | None = None

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> ShareRecord:
        if self.expiry_time <= self.created_at:
            raise ValueError("expiryTime must be later than createdAt")
        return self

    def is_expired(self, now: int) -> bool:
        """True once *now* has reached the expiry instant."""
        return now >= self.expiry_time

    def remaining_ms(self, now: int) -> int:
        """Milliseconds left before expiry, floored at zero."""
        return max(self.expiry_time - now, 0)


class CacheEntry(_Record):
    """An arbitrary JSON payload plus its capture time."""

    payload: Any
    timestamp: int

    def age_ms(self, now: int) -> int:
        return now - self.timestamp


class QueuedAction(_Record):
    """A user operation deferred while offline."""

    action_type: str = Field(alias="type")
    data: Any = None
    timestamp: int


_TOKEN_INDEX = TypeAdapter(list[str])
_ACTION_QUEUE = TypeAdapter(list[QueuedAction])


def encode_record(record: _Record) -> str:
    """Serialize any record model to its stored JSON form."""
    return record.model_dump_json(by_alias=True)


def decode_share_record(raw: str) -> ShareRecord:
    return ShareRecord.model_validate_json(raw)


def decode_cache_entry(raw: str) -> CacheEntry:
    return CacheEntry.model_validate_json(raw)


def encode_token_index(tokens: list[str]) -> str:
    return _TOKEN_INDEX.dump_json(tokens).decode()


def decode_token_index(raw: str | None) -> list[str]:
    """Decode the active-share index; a missing key is an empty index."""
    if raw is None:
        return []
    return _TOKEN_INDEX.validate_json(raw)


def encode_action_queue(actions: list[QueuedAction]) -> str:
    return _ACTION_QUEUE.dump_json(actions, by_alias=True).decode()


def decode_action_queue(raw: str | None) -> list[QueuedAction]:
    """Decode the offline action queue; a missing key is an empty queue."""
    if raw is None:
        return []
    return _ACTION_QUEUE.validate_json(raw)
