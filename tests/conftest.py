"""Shared test fixtures for bustrack core tests."""

from __future__ import annotations

from collections.abc import Iterable

import pytest

from bustrack.offline import OfflineCacheManager
from bustrack.records import BusInfo, Coordinates
from bustrack.sharing import ShareTokenManager
from bustrack.storage import MemoryStore, StorageError

# 2026-01-01T00:00:00Z
T0_MS = 1_767_225_600_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = T0_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, minutes: float = 0, seconds: float = 0, ms: int = 0) -> None:
        self.now += int(minutes * 60_000 + seconds * 1000) + ms


class FailingStore(MemoryStore):
    """MemoryStore whose operations can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.fail_remove = False
        self.fail_keys = False

    async def get(self, key: str) -> str | None:
        if self.fail_get:
            raise StorageError("read failed")
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_set:
            raise StorageError("write failed")
        await super().set(key, value)

    async def remove(self, key: str) -> None:
        if self.fail_remove:
            raise StorageError("remove failed")
        await super().remove(key)

    async def keys(self) -> list[str]:
        if self.fail_keys:
            raise StorageError("keys failed")
        return await super().keys()

    async def multi_remove(self, keys: Iterable[str]) -> None:
        if self.fail_remove:
            raise StorageError("remove failed")
        await super().multi_remove(keys)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def shares(store: MemoryStore, clock: FakeClock) -> ShareTokenManager:
    return ShareTokenManager(store, clock=clock)


@pytest.fixture
def offline(store: MemoryStore, clock: FakeClock) -> OfflineCacheManager:
    return OfflineCacheManager(store, clock=clock)


@pytest.fixture
def bus_info() -> BusInfo:
    return BusInfo(
        operator="Greyline Express",
        departure_time="08:30",
        arrival_time="12:45",
        current_location=Coordinates(latitude=40.7128, longitude=-74.0060),
        destination=Coordinates(latitude=40.75, longitude=-73.98),
    )
