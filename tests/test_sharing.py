"""Tests for the share token manager."""

from __future__ import annotations

import uuid

import pytest

from bustrack.constants import ACTIVE_SHARES_KEY, DEFAULT_SHARE_BASE_URL
from bustrack.records import (
    BusInfo,
    LocationData,
    decode_token_index,
    encode_record,
    encode_token_index,
)
from bustrack.sharing import (
    ShareCreationError,
    ShareNotFoundError,
    ShareTokenManager,
    coerce_expiry_minutes,
    token_from_link,
)
from bustrack.storage import MemoryStore
from tests.conftest import FailingStore, FakeClock

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _index(store: MemoryStore) -> list[str]:
    return decode_token_index(await store.get(ACTIVE_SHARES_KEY))


# ---------------------------------------------------------------------------
# coerce_expiry_minutes / token_from_link
# ---------------------------------------------------------------------------


class TestCoerceExpiryMinutes:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, 60),
            (30, 30),
            ("45", 45),
            (" 15 ", 15),
            ("12.9", 12),
            (0, 60),
            (-5, 60),
            ("-10", 60),
            ("soon", 60),
            ("", 60),
            (True, 60),
        ],
    )
    def test_values(self, value: object, expected: int) -> None:
        assert coerce_expiry_minutes(value) == expected  # type: ignore[arg-type]

    def test_no_upper_bound(self) -> None:
        """Multi-year shares are allowed; only non-positive values are rejected."""
        three_years = 3 * 365 * 24 * 60
        assert coerce_expiry_minutes(three_years) == three_years


class TestTokenFromLink:
    def test_full_url(self) -> None:
        assert token_from_link("https://bustickets.app/track/abc-123") == "abc-123"

    def test_trailing_slash(self) -> None:
        assert token_from_link("https://bustickets.app/track/abc-123/") == "abc-123"

    def test_query_and_fragment_ignored(self) -> None:
        assert token_from_link("https://bustickets.app/track/abc?utm=x#top") == "abc"

    def test_bare_token(self) -> None:
        assert token_from_link("abc-123") == "abc-123"

    def test_empty(self) -> None:
        assert token_from_link("") == ""


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_returns_link_and_expiry(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info, 30)

        assert uuid.UUID(link.token).version == 4
        assert link.share_link == f"{DEFAULT_SHARE_BASE_URL}{link.token}"
        assert link.expiry_time == clock.now + 30 * 60_000
        assert link.record.created_at == clock.now
        assert link.record.booking_id == "BK1"

    @pytest.mark.asyncio
    async def test_create_persists_record_and_index(
        self, shares: ShareTokenManager, store: MemoryStore, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)

        assert await store.get(f"share_{link.token}") is not None
        assert await _index(store) == [link.token]

    @pytest.mark.asyncio
    async def test_default_ttl_for_bad_input(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info, "not a number")
        assert link.expiry_time == clock.now + 60 * 60_000

    @pytest.mark.asyncio
    async def test_bus_info_is_a_snapshot(self, shares: ShareTokenManager) -> None:
        """Mutating the caller's dict after creation does not change the share."""
        info: dict[str, object] = {"operator": "Greyline", "seat": "12A"}
        link = await shares.create("BK1", info)
        info["operator"] = "Changed"

        record = await shares.get(link.token)
        assert record is not None
        assert record.bus_info.operator == "Greyline"
        assert record.bus_info.model_extra == {"seat": "12A"}

    @pytest.mark.asyncio
    async def test_custom_base_url(self, store: MemoryStore, clock: FakeClock) -> None:
        manager = ShareTokenManager(store, base_share_url="https://x.test/s/", clock=clock)
        link = await manager.create("BK1", {})
        assert link.share_link == f"https://x.test/s/{link.token}"

    @pytest.mark.asyncio
    async def test_storage_failure_raises_generic_error(
        self, failing_store: FailingStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        failing_store.fail_set = True

        with pytest.raises(ShareCreationError, match="Failed to create sharing link"):
            await manager.create("BK1", bus_info)

    @pytest.mark.asyncio
    async def test_failed_create_is_not_cached(
        self, failing_store: FailingStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        failing_store.fail_set = True
        with pytest.raises(ShareCreationError):
            await manager.create("BK1", bus_info)

        failing_store.fail_set = False
        assert await manager.list_active() == []

    @pytest.mark.asyncio
    async def test_index_failure_removes_record(
        self, failing_store: FailingStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        failing_store.fail_get = True

        with pytest.raises(ShareCreationError):
            await manager.create("BK1", bus_info)

        failing_store.fail_get = False
        assert [k for k in await failing_store.keys() if k.startswith("share_")] == []


# ---------------------------------------------------------------------------
# get / TTL
# ---------------------------------------------------------------------------


class TestGet:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("minutes", [1, 5, 60, 24 * 60])
    async def test_ttl_boundary(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo, minutes: int
    ) -> None:
        """Valid strictly before createdAt + m minutes, gone at and after it."""
        link = await shares.create("BK1", bus_info, minutes)

        clock.advance(ms=minutes * 60_000 - 1)
        assert await shares.get(link.token) is not None

        clock.advance(ms=1)
        assert await shares.get(link.token) is None

    @pytest.mark.asyncio
    async def test_expiry_scenario(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info, expiry_minutes=1)
        assert await shares.get(link.token) is not None

        clock.advance(seconds=61)
        assert await shares.get(link.token) is None
        assert link.token not in [s.token for s in await shares.list_active()]

    @pytest.mark.asyncio
    async def test_expired_get_revokes(
        self,
        shares: ShareTokenManager,
        store: MemoryStore,
        clock: FakeClock,
        bus_info: BusInfo,
    ) -> None:
        link = await shares.create("BK1", bus_info, 1)
        clock.advance(minutes=2)

        await shares.get(link.token)

        assert await store.get(f"share_{link.token}") is None
        assert await _index(store) == []

    @pytest.mark.asyncio
    async def test_get_reads_from_storage_in_fresh_instance(
        self, shares: ShareTokenManager, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)

        other = ShareTokenManager(store, clock=clock)
        record = await other.get(link.token)
        assert record is not None
        assert record.bus_info.operator == "Greyline Express"

    @pytest.mark.asyncio
    async def test_expired_in_storage_fresh_instance(
        self, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        creator = ShareTokenManager(store, clock=clock)
        link = await creator.create("BK1", bus_info, 5)
        clock.advance(minutes=10)

        reader = ShareTokenManager(store, clock=clock)
        assert await reader.get(link.token) is None
        assert await store.get(f"share_{link.token}") is None

    @pytest.mark.asyncio
    async def test_revoke_seen_by_other_manager(
        self, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        creator = ShareTokenManager(store, clock=clock)
        reader = ShareTokenManager(store, clock=clock)
        link = await creator.create("BK1", bus_info)
        assert await reader.get(link.token) is not None

        await creator.revoke(link.token)

        assert await creator.get(link.token) is None
        assert await reader.get(link.token) is None

    @pytest.mark.asyncio
    async def test_location_update_seen_by_other_manager(
        self, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        writer = ShareTokenManager(store, clock=clock)
        reader = ShareTokenManager(store, clock=clock)
        link = await writer.create("BK1", bus_info)
        assert (await reader.get(link.token)).location_data is None

        await writer.update_location(link.token, {"latitude": 40.72, "longitude": -73.99})

        record = await reader.get(link.token)
        assert record is not None
        assert record.location_data is not None
        assert record.location_data.latitude == 40.72

    @pytest.mark.asyncio
    async def test_returns_copy(self, shares: ShareTokenManager, bus_info: BusInfo) -> None:
        """Mutating the returned record does not leak into the manager."""
        link = await shares.create("BK1", bus_info)
        first = await shares.get(link.token)
        assert first is not None
        first.booking_id = "tampered"
        assert first.bus_info.current_location is not None
        first.bus_info.current_location.latitude = 0.0

        second = await shares.get(link.token)
        assert second is not None
        assert second.booking_id == "BK1"
        assert second.bus_info.current_location is not None
        assert second.bus_info.current_location.latitude == 40.7128

    @pytest.mark.asyncio
    async def test_unknown_and_empty_tokens(self, shares: ShareTokenManager) -> None:
        assert await shares.get("missing") is None
        assert await shares.get("") is None

    @pytest.mark.asyncio
    async def test_storage_failure_returns_none(
        self, failing_store: FailingStore, clock: FakeClock
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        failing_store.fail_get = True
        assert await manager.get("anything") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_returns_none(
        self, shares: ShareTokenManager, store: MemoryStore
    ) -> None:
        await store.set("share_bad", "{not json")
        assert await shares.get("bad") is None


# ---------------------------------------------------------------------------
# revoke
# ---------------------------------------------------------------------------


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_removes_everywhere(
        self, shares: ShareTokenManager, store: MemoryStore, bus_info: BusInfo
    ) -> None:
        keep = await shares.create("BK1", bus_info)
        drop = await shares.create("BK2", bus_info)

        await shares.revoke(drop.token)

        assert await shares.get(drop.token) is None
        assert await store.get(f"share_{drop.token}") is None
        assert await _index(store) == [keep.token]

    @pytest.mark.asyncio
    async def test_revoke_twice_is_idempotent(
        self, shares: ShareTokenManager, store: MemoryStore, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)

        await shares.revoke(link.token)
        state_after_first = dict(store._data)
        await shares.revoke(link.token)

        assert store._data == state_after_first
        assert await shares.get(link.token) is None

    @pytest.mark.asyncio
    async def test_revoke_never_created(self, shares: ShareTokenManager) -> None:
        await shares.revoke("never-created")
        assert await shares.get("never-created") is None

    @pytest.mark.asyncio
    async def test_revoke_swallows_storage_errors(
        self, failing_store: FailingStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        link = await manager.create("BK1", bus_info)
        failing_store.fail_remove = True

        await manager.revoke(link.token)  # should not raise


# ---------------------------------------------------------------------------
# list_active / cleanup_expired
# ---------------------------------------------------------------------------


class TestListAndCleanup:
    @pytest.mark.asyncio
    async def test_list_active_only_live(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        short = await shares.create("BK1", bus_info, 1)
        long = await shares.create("BK2", bus_info, 120)
        clock.advance(minutes=5)

        active = await shares.list_active()

        assert [a.token for a in active] == [long.token]
        assert active[0].share_link.endswith(long.token)
        assert short.token not in await shares.active_tokens()

    @pytest.mark.asyncio
    async def test_list_skips_dangling_index_entries(
        self, shares: ShareTokenManager, store: MemoryStore, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)
        await store.set(ACTIVE_SHARES_KEY, f'["ghost", "{link.token}"]')

        assert [a.token for a in await shares.list_active()] == [link.token]

    @pytest.mark.asyncio
    async def test_cleanup_keeps_index_consistent(
        self,
        shares: ShareTokenManager,
        store: MemoryStore,
        clock: FakeClock,
        bus_info: BusInfo,
    ) -> None:
        expired = [await shares.create(f"E{i}", bus_info, 1) for i in range(3)]
        live = [await shares.create(f"L{i}", bus_info, 90) for i in range(2)]
        # An index entry whose record was never written
        await store.set(ACTIVE_SHARES_KEY, encode_token_index(["dangling", *await _index(store)]))
        clock.advance(minutes=10)

        remaining = await shares.cleanup_expired()

        index = await _index(store)
        assert remaining == len(live)
        assert sorted(index) == sorted(link.token for link in live)
        for token in index:
            raw = await store.get(f"share_{token}")
            assert raw is not None
        for link in expired:
            assert await store.get(f"share_{link.token}") is None

    @pytest.mark.asyncio
    async def test_cleanup_bypasses_process_cache(
        self, shares: ShareTokenManager, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        """An expired record rewritten directly in storage is still swept."""
        link = await shares.create("BK1", bus_info, 60)
        stored = link.record.model_copy(update={"expiry_time": clock.now + 1})
        await store.set(f"share_{link.token}", encode_record(stored))
        clock.advance(ms=5)

        assert await shares.cleanup_expired() == 0
        assert await shares.get(link.token) is None

    @pytest.mark.asyncio
    async def test_cleanup_drops_corrupt_records(
        self, shares: ShareTokenManager, store: MemoryStore
    ) -> None:
        await store.set("share_bad", "garbage")
        await store.set(ACTIVE_SHARES_KEY, '["bad"]')

        assert await shares.cleanup_expired() == 0
        assert await store.get("share_bad") is None
        assert await _index(store) == []

    @pytest.mark.asyncio
    async def test_cleanup_swallows_storage_errors(
        self, failing_store: FailingStore, clock: FakeClock
    ) -> None:
        manager = ShareTokenManager(failing_store, clock=clock)
        failing_store.fail_get = True
        assert await manager.cleanup_expired() == 0


# ---------------------------------------------------------------------------
# update_location / deep links / share message
# ---------------------------------------------------------------------------


class TestUpdatesAndLinks:
    @pytest.mark.asyncio
    async def test_update_location(
        self, shares: ShareTokenManager, store: MemoryStore, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)
        clock.advance(minutes=3)

        updated = await shares.update_location(
            link.token, LocationData(latitude=40.72, longitude=-74.0, speed_kmh=55.0)
        )

        assert updated.location_data is not None
        assert updated.location_data.last_updated == clock.now
        assert updated.expiry_time == link.expiry_time

        reread = await ShareTokenManager(store, clock=clock).get(link.token)
        assert reread is not None
        assert reread.location_data is not None
        assert reread.location_data.speed_kmh == 55.0

    @pytest.mark.asyncio
    async def test_update_location_accepts_dict(
        self, shares: ShareTokenManager, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info)
        updated = await shares.update_location(
            link.token, {"latitude": 1.0, "longitude": 2.0, "headingDeg": 90.0}
        )
        assert updated.location_data is not None
        assert updated.location_data.heading_deg == 90.0

    @pytest.mark.asyncio
    async def test_update_location_unknown_token(self, shares: ShareTokenManager) -> None:
        with pytest.raises(ShareNotFoundError):
            await shares.update_location("missing", {"latitude": 1.0, "longitude": 2.0})

    @pytest.mark.asyncio
    async def test_update_location_expired(
        self, shares: ShareTokenManager, clock: FakeClock, bus_info: BusInfo
    ) -> None:
        link = await shares.create("BK1", bus_info, 1)
        clock.advance(minutes=1)
        with pytest.raises(ShareNotFoundError):
            await shares.update_location(link.token, {"latitude": 1.0, "longitude": 2.0})

    @pytest.mark.asyncio
    async def test_handle_deep_link(self, shares: ShareTokenManager, bus_info: BusInfo) -> None:
        link = await shares.create("BK1", bus_info)

        record = await shares.handle_deep_link(link.share_link)
        assert record is not None
        assert record.token == link.token

    @pytest.mark.asyncio
    async def test_handle_deep_link_invalid(self, shares: ShareTokenManager) -> None:
        assert await shares.handle_deep_link("https://bustickets.app/track/") is None
        assert await shares.handle_deep_link("https://bustickets.app/track/nope") is None

    def test_compose_share_message(self, shares: ShareTokenManager) -> None:
        msg = shares.compose_share_message(
            "https://bustickets.app/track/t1", "Greyline", subject="My bus"
        )
        assert msg.title == "Share Bus Location"
        assert "Greyline" in msg.message
        assert msg.message.endswith("https://bustickets.app/track/t1")
        assert msg.url == "https://bustickets.app/track/t1"
        assert msg.extra == {"subject": "My bus"}
