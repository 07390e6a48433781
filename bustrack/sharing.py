"""Ephemeral share tokens exposing a bus's live location via a public link.

A share is a :class:`~bustrack.records.ShareRecord` stored under
``share_{token}``, plus an entry in the ``active_shares`` index.  Expiry is
lazy: nothing runs on a timer.  An expired share disappears the next time it
is read through :meth:`ShareTokenManager.get` (which revokes it as a side
effect) or when :meth:`ShareTokenManager.cleanup_expired` sweeps the index.
Integrators decide when to run the sweep, e.g. whenever the sharing screen
gains focus.

Read-modify-write of the index is not guarded: two overlapping revokes can
race, last writer wins.  The client runs on a single event loop, so this only
matters across interleaved awaits.

Several managers may share one store (e.g. API workers over the SQL store).
Every read goes to the store, so a share revoked or updated through one
manager is seen by the others on their next read.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from pydantic import ValidationError

from bustrack.constants import (
    ACTIVE_SHARES_KEY,
    DEFAULT_SHARE_BASE_URL,
    DEFAULT_SHARE_EXPIRY_MINUTES,
    MS_PER_MINUTE,
    SHARE_KEY_PREFIX,
    now_ms,
)
from bustrack.records import (
    BusInfo,
    LocationData,
    ShareRecord,
    decode_share_record,
    decode_token_index,
    encode_record,
    encode_token_index,
)
from bustrack.storage import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

_READ_ERRORS = (StorageError, ValidationError, ValueError)


class ShareCreationError(RuntimeError):
    """A share could not be persisted; safe to show to the user."""


class ShareNotFoundError(LookupError):
    """The token does not name a live share."""


@dataclass
class ShareLink:
    """Result of creating a share."""

    token: str
    share_link: str
    expiry_time: int
    record: ShareRecord


@dataclass
class ActiveShare:
    """A live share as listed on the sharing screen."""

    token: str
    share_link: str
    record: ShareRecord


@dataclass
class ShareMessage:
    """Content handed to the platform share sheet."""

    title: str
    message: str
    url: str
    extra: dict[str, str] = field(default_factory=dict)


def _share_key(token: str) -> str:
    return f"{SHARE_KEY_PREFIX}{token}"


def coerce_expiry_minutes(value: int | float | str | None) -> int:
    """Parse a caller-supplied TTL, falling back to the default.

    Accepts ints, floats (truncated) and numeric strings such as the raw
    contents of a text field.  ``None``, garbage and non-positive values all
    mean "use the default".  There is no upper bound.
    """
    if value is None or isinstance(value, bool):
        return DEFAULT_SHARE_EXPIRY_MINUTES
    try:
        minutes = int(float(value.strip()) if isinstance(value, str) else value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_SHARE_EXPIRY_MINUTES
    return minutes if minutes > 0 else DEFAULT_SHARE_EXPIRY_MINUTES


def token_from_link(url: str) -> str:
    """Extract the trailing path segment of a share link."""
    path = urlsplit(url.strip()).path
    return path.rstrip("/").rsplit("/", 1)[-1]


class ShareTokenManager:
    """Create, resolve, revoke and sweep location shares.

    Constructed at startup with the store it persists into.  The store is
    authoritative: each lookup fetches the raw record, and the in-process
    ``token -> (raw, record)`` cache only skips decoding when the stored
    document is unchanged.
    """

    def __init__(
        self,
        store: KeyValueStore,
        base_share_url: str = DEFAULT_SHARE_BASE_URL,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.base_share_url = base_share_url
        self._clock = clock
        self._cache: dict[str, tuple[str, ShareRecord]] = {}

    # ------------------------------------------------------------------
    # Index helpers
    # ------------------------------------------------------------------

    async def _read_index(self) -> list[str]:
        return decode_token_index(await self.store.get(ACTIVE_SHARES_KEY))

    async def _write_index(self, tokens: list[str]) -> None:
        await self.store.set(ACTIVE_SHARES_KEY, encode_token_index(tokens))

    async def active_tokens(self) -> list[str]:
        """The raw index, expired entries included. Empty on read failure."""
        try:
            return await self._read_index()
        except _READ_ERRORS:
            logger.warning("Failed to read active share index", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def share_link_for(self, token: str) -> str:
        return f"{self.base_share_url}{token}"

    async def create(
        self,
        booking_id: str,
        bus_info: BusInfo | dict[str, object],
        expiry_minutes: int | float | str | None = DEFAULT_SHARE_EXPIRY_MINUTES,
    ) -> ShareLink:
        """Create a share for *booking_id* and return its public link.

        *bus_info* is copied into the record; later changes to the caller's
        object are not reflected in the share.

        Raises:
            ShareCreationError: the record or the index could not be written.
        """
        minutes = coerce_expiry_minutes(expiry_minutes)
        token = str(uuid.uuid4())
        created_at = self._clock()

        try:
            info = (
                bus_info.model_copy(deep=True)
                if isinstance(bus_info, BusInfo)
                else BusInfo.model_validate(bus_info)
            )
            record = ShareRecord(
                token=token,
                booking_id=booking_id,
                bus_info=info,
                created_at=created_at,
                expiry_time=created_at + minutes * MS_PER_MINUTE,
            )
            raw = encode_record(record)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.error("Invalid share data for booking %s", booking_id, exc_info=True)
            raise ShareCreationError("Failed to create sharing link") from exc

        try:
            await self.store.set(_share_key(token), raw)
        except StorageError as exc:
            logger.error("Error creating share for booking %s", booking_id, exc_info=True)
            raise ShareCreationError("Failed to create sharing link") from exc

        try:
            tokens = await self._read_index()
            tokens.append(token)
            await self._write_index(tokens)
        except _READ_ERRORS as exc:
            logger.error("Error indexing share for booking %s", booking_id, exc_info=True)
            await self._discard_record(token)
            raise ShareCreationError("Failed to create sharing link") from exc

        self._cache[token] = (raw, record)
        logger.info("Share %s created for booking %s (%d min)", token, booking_id, minutes)
        return ShareLink(
            token=token,
            share_link=self.share_link_for(token),
            expiry_time=record.expiry_time,
            record=record.model_copy(deep=True),
        )

    async def _discard_record(self, token: str) -> None:
        """Best-effort removal of a record that never made it into the index."""
        try:
            await self.store.remove(_share_key(token))
        except StorageError:
            logger.warning("Failed to remove unindexed share %s", token, exc_info=True)

    async def _lookup(self, token: str) -> ShareRecord | None:
        raw = await self.store.get(_share_key(token))
        if raw is None:
            self._cache.pop(token, None)
            return None
        cached = self._cache.get(token)
        if cached is not None and cached[0] == raw:
            return cached[1]
        record = decode_share_record(raw)
        self._cache[token] = (raw, record)
        return record

    async def get(self, token: str) -> ShareRecord | None:
        """Resolve a token to its share, or ``None`` if missing or expired.

        Reading an expired share revokes it.  The returned record is a copy.
        """
        if not token:
            return None
        try:
            record = await self._lookup(token)
        except _READ_ERRORS:
            logger.warning("Failed to read share %s", token, exc_info=True)
            return None
        if record is None:
            return None
        if record.is_expired(self._clock()):
            logger.info("Share %s expired, revoking", token)
            await self.revoke(token)
            return None
        return record.model_copy(deep=True)

    async def revoke(self, token: str) -> None:
        """Remove a share everywhere. Unknown tokens are ignored."""
        self._cache.pop(token, None)
        try:
            await self.store.remove(_share_key(token))
            tokens = await self._read_index()
            if token in tokens:
                await self._write_index([t for t in tokens if t != token])
        except _READ_ERRORS:
            logger.warning("Failed to revoke share %s", token, exc_info=True)
            return
        logger.info("Share revoked: %s", token)

    async def list_active(self) -> list[ActiveShare]:
        """Return every share in the index that is still live."""
        active: list[ActiveShare] = []
        for token in await self.active_tokens():
            record = await self.get(token)
            if record is not None:
                active.append(
                    ActiveShare(token=token, share_link=self.share_link_for(token), record=record)
                )
        return active

    async def cleanup_expired(self) -> int:
        """Sweep the index, dropping expired and dangling entries.

        Loads each record straight from the store (not through :meth:`get`),
        deletes expired ones, and rewrites the index with the survivors.
        Returns the number of live shares left.
        """
        now = self._clock()
        valid: list[str] = []
        try:
            for token in await self._read_index():
                raw = await self.store.get(_share_key(token))
                if raw is None:
                    self._cache.pop(token, None)
                    continue
                try:
                    record = decode_share_record(raw)
                except (ValidationError, ValueError):
                    logger.warning("Dropping unreadable share record %s", token, exc_info=True)
                    record = None
                if record is not None and not record.is_expired(now):
                    valid.append(token)
                else:
                    await self.store.remove(_share_key(token))
                    self._cache.pop(token, None)
            await self._write_index(valid)
        except _READ_ERRORS:
            logger.warning("Failed to clean up expired shares", exc_info=True)
            return 0
        logger.info("Cleaned up expired shares. Valid shares: %d", len(valid))
        return len(valid)

    # ------------------------------------------------------------------
    # Updates and links
    # ------------------------------------------------------------------

    async def update_location(
        self, token: str, location: LocationData | dict[str, object]
    ) -> ShareRecord:
        """Attach the latest bus position to a live share.

        Raises:
            ShareNotFoundError: *token* is unknown or expired.
            StorageError: the patched record could not be written.
        """
        record = await self.get(token)
        if record is None:
            raise ShareNotFoundError("Share not found or expired")

        data = (
            location.model_dump(by_alias=True)
            if isinstance(location, LocationData)
            else dict(location)
        )
        data["lastUpdated"] = self._clock()
        data.pop("last_updated", None)
        record.location_data = LocationData.model_validate(data)

        raw = encode_record(record)
        await self.store.set(_share_key(token), raw)
        self._cache[token] = (raw, record)
        logger.info("Shared location updated for token: %s", token)
        return record.model_copy(deep=True)

    async def handle_deep_link(self, url: str) -> ShareRecord | None:
        """Resolve an incoming share link to its record."""
        token = token_from_link(url)
        if not token:
            return None
        return await self.get(token)

    def compose_share_message(
        self, share_link: str, operator: str, **extra: str
    ) -> ShareMessage:
        return ShareMessage(
            title="Share Bus Location",
            message=(
                f"Track my bus journey with {operator}. "
                f"Click the link to view live location: {share_link}"
            ),
            url=share_link,
            extra=dict(extra),
        )
