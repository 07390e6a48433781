"""Offline cache and deferred-action replay.

:class:`OfflineCacheManager` writes tracking data through to the key-value
store while online and serves it back while offline.  Entries live under
``{namespace}_{key}`` and carry their capture timestamp; only map data has
an expiry check (:meth:`OfflineCacheManager.is_map_cache_expired`), the
other namespaces leave staleness to the caller, who shows the timestamp.

There is no eviction: entries accumulate until
:meth:`OfflineCacheManager.clear_all_cached_data` is called.

Operations the user triggers while disconnected go into an ordered queue.
When the connectivity subscription reports a false -> true transition the
queue is replayed once, in insertion order, and the replayed entries are
removed.  A handler that raises does not stop the replay; by default its
entry is dropped, or written back when ``requeue_failed`` is set.  Actions
queued while a replay is awaiting its handlers stay in the queue.

The queue is an unguarded read-modify-write of one key: two
:meth:`OfflineCacheManager.queue_action` calls interleaved across an await
can lose one of the appends, and so can an append landing between the
replay's final read and write.  On a single event loop with the in-memory
or file store neither await yields, so this matters only for stores that do
real I/O, such as the SQL store.

Every store access is best-effort: failures are logged and reads degrade to
``None`` or an empty list.  Nothing here raises into UI code.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from bustrack.connectivity import ConnectivityMonitor, ConnectivityProbe, Disposer, Subject
from bustrack.constants import (
    DEFAULT_MAP_CACHE_MAX_AGE_MS,
    OFFLINE_ACTION_QUEUE_KEY,
    CacheNamespace,
    now_ms,
)
from bustrack.records import (
    CacheEntry,
    Coordinates,
    QueuedAction,
    decode_action_queue,
    decode_cache_entry,
    encode_action_queue,
    encode_record,
)
from bustrack.storage import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

_STORE_ERRORS = (StorageError, ValidationError, ValueError)

ActionHandler = Callable[[QueuedAction], Awaitable[object]]


@dataclass
class SyncReport:
    """Outcome of one replay of the offline action queue."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0

    @property
    def attempted(self) -> int:
        return self.processed + self.failed + self.skipped


def cache_key(namespace: str, key: str) -> str:
    return f"{namespace}_{key}"


def route_key(origin: Coordinates, destination: Coordinates) -> str:
    """Build the ``"originLat,originLng-destLat,destLng"`` cache key."""
    return f"{origin.as_key()}-{destination.as_key()}"


class OfflineCacheManager:
    """Write-through cache for tracking data plus the offline action queue.

    Args:
        store: Backing key-value store.
        probe: Optional reachability check used by :meth:`is_network_connected`.
        clock: Epoch-millisecond clock.
        requeue_failed: Write failed actions back to the queue after a replay
            instead of dropping them.
        default_handler: Fallback for action types with no registered handler.
    """

    def __init__(
        self,
        store: KeyValueStore,
        probe: ConnectivityProbe | None = None,
        clock: Callable[[], int] = now_ms,
        *,
        requeue_failed: bool = False,
        default_handler: ActionHandler | None = None,
    ) -> None:
        self.store = store
        self.probe = probe
        self.requeue_failed = requeue_failed
        self.default_handler = default_handler
        self.is_connected = True
        self.last_sync: SyncReport | None = None
        self._clock = clock
        self._handlers: dict[str, ActionHandler] = {}
        self._listeners: Subject[bool] = Subject()
        self._unsubscribe: Disposer | None = None

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def attach(self, monitor: ConnectivityMonitor) -> None:
        """Subscribe to *monitor*, replacing any previous subscription."""
        self.detach()
        self.is_connected = monitor.is_connected
        self._unsubscribe = monitor.subscribe(self.on_connectivity_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def add_connection_listener(self, listener: Callable[[bool], object]) -> Disposer:
        """Be told whenever the connected flag actually changes."""
        return self._listeners.subscribe(listener)

    async def on_connectivity_change(self, is_connected: bool) -> SyncReport | None:
        """Handle one status event; replays the queue on reconnection."""
        was_connected = self.is_connected
        self.is_connected = is_connected

        if was_connected == is_connected:
            return None

        logger.info("Connectivity changed: %s", "online" if is_connected else "offline")
        await self._listeners.notify(is_connected)
        if is_connected:
            return await self.sync_offline_data()
        return None

    async def is_network_connected(self) -> bool:
        if self.probe is None:
            return self.is_connected
        return await self.probe.check()

    # ------------------------------------------------------------------
    # Generic cache
    # ------------------------------------------------------------------

    async def cache_entry(self, namespace: str, key: str, payload: Any) -> None:
        entry = CacheEntry(payload=payload, timestamp=self._clock())
        try:
            await self.store.set(cache_key(namespace, key), encode_record(entry))
        except _STORE_ERRORS:
            logger.warning("Error caching %s for %s", namespace, key, exc_info=True)
            return
        logger.debug("Cached %s for %s", namespace, key)

    async def get_cached(self, namespace: str, key: str) -> CacheEntry | None:
        """Return the cached entry without any staleness check."""
        try:
            raw = await self.store.get(cache_key(namespace, key))
            return decode_cache_entry(raw) if raw is not None else None
        except _STORE_ERRORS:
            logger.warning("Error reading cached %s for %s", namespace, key, exc_info=True)
            return None

    async def is_expired(self, namespace: str, key: str, max_age_ms: int) -> bool:
        entry = await self.get_cached(namespace, key)
        if entry is None:
            return True
        return entry.age_ms(self._clock()) > max_age_ms

    async def cached_keys(self, namespace: str) -> list[str]:
        """Keys (without the namespace prefix) currently cached under *namespace*."""
        prefix = f"{namespace}_"
        try:
            keys = await self.store.keys()
        except _STORE_ERRORS:
            logger.warning("Error listing cached %s keys", namespace, exc_info=True)
            return []
        return [k[len(prefix) :] for k in keys if k.startswith(prefix)]

    async def clear_all_cached_data(self) -> int:
        """Remove every cache namespace's entries. Returns the count removed."""
        prefixes = tuple(f"{ns.value}_" for ns in CacheNamespace)
        try:
            to_clear = [k for k in await self.store.keys() if k.startswith(prefixes)]
            if to_clear:
                await self.store.multi_remove(to_clear)
        except _STORE_ERRORS:
            logger.warning("Error clearing cached data", exc_info=True)
            return 0
        logger.info("Cleared %d cached items", len(to_clear))
        return len(to_clear)

    # ------------------------------------------------------------------
    # Namespaced conveniences
    # ------------------------------------------------------------------

    async def cache_map_data(self, region: str, map_data: Any) -> None:
        await self.cache_entry(CacheNamespace.MAP_DATA, region, map_data)

    async def get_cached_map_data(self, region: str) -> CacheEntry | None:
        return await self.get_cached(CacheNamespace.MAP_DATA, region)

    async def is_map_cache_expired(
        self, region: str, max_age_ms: int = DEFAULT_MAP_CACHE_MAX_AGE_MS
    ) -> bool:
        return await self.is_expired(CacheNamespace.MAP_DATA, region, max_age_ms)

    async def cache_bus_location(self, booking_id: str, location: Any) -> None:
        await self.cache_entry(CacheNamespace.BUS_LOCATION, booking_id, location)

    async def get_cached_bus_location(self, booking_id: str) -> CacheEntry | None:
        return await self.get_cached(CacheNamespace.BUS_LOCATION, booking_id)

    async def cache_route_data(self, origin_dest_key: str, route_data: Any) -> None:
        await self.cache_entry(CacheNamespace.ROUTE_DATA, origin_dest_key, route_data)

    async def get_cached_route_data(self, origin_dest_key: str) -> CacheEntry | None:
        return await self.get_cached(CacheNamespace.ROUTE_DATA, origin_dest_key)

    async def cache_traffic_data(self, key: str, traffic_data: Any) -> None:
        await self.cache_entry(CacheNamespace.TRAFFIC_DATA, key, traffic_data)

    async def get_cached_traffic_data(self, key: str) -> CacheEntry | None:
        return await self.get_cached(CacheNamespace.TRAFFIC_DATA, key)

    # ------------------------------------------------------------------
    # Offline action queue
    # ------------------------------------------------------------------

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Route queued actions of *action_type* to *handler* on replay."""
        self._handlers[action_type] = handler

    async def queue_action(self, action_type: str, data: Any = None) -> None:
        """Append an action to the queue. Callers check connectivity first."""
        try:
            queue = decode_action_queue(await self.store.get(OFFLINE_ACTION_QUEUE_KEY))
            queue.append(QueuedAction(type=action_type, data=data, timestamp=self._clock()))
            await self.store.set(OFFLINE_ACTION_QUEUE_KEY, encode_action_queue(queue))
        except _STORE_ERRORS:
            logger.warning("Error queuing offline action %s", action_type, exc_info=True)
            return
        logger.info("Action queued for offline: %s", action_type)

    async def get_queued_actions(self) -> list[QueuedAction]:
        try:
            return decode_action_queue(await self.store.get(OFFLINE_ACTION_QUEUE_KEY))
        except _STORE_ERRORS:
            logger.warning("Error getting queued actions", exc_info=True)
            return []

    async def clear_action_queue(self) -> None:
        await self._write_queue([])

    async def _write_queue(self, actions: list[QueuedAction]) -> None:
        try:
            await self.store.set(OFFLINE_ACTION_QUEUE_KEY, encode_action_queue(actions))
        except _STORE_ERRORS:
            logger.warning("Error writing offline action queue", exc_info=True)

    async def sync_offline_data(self) -> SyncReport:
        """Replay the queue in FIFO order, then drop the replayed entries.

        Actions queued while the handlers run are appended after the replayed
        prefix and survive for the next replay.
        """
        report = SyncReport()
        actions = await self.get_queued_actions()
        if not actions:
            self.last_sync = report
            return report

        logger.info("Processing %d queued actions", len(actions))
        failed: list[QueuedAction] = []
        for action in actions:
            handler = self._handlers.get(action.action_type, self.default_handler)
            if handler is None:
                logger.warning("No handler for queued action %s, dropping", action.action_type)
                report.skipped += 1
                continue
            try:
                await handler(action)
            except Exception:
                logger.warning("Queued action %s failed", action.action_type, exc_info=True)
                report.failed += 1
                failed.append(action)
            else:
                report.processed += 1

        remaining = (await self.get_queued_actions())[len(actions) :]
        if remaining:
            logger.info("%d action(s) queued during replay kept", len(remaining))
        if self.requeue_failed and failed:
            remaining = failed + remaining
            report.requeued = len(failed)
        await self._write_queue(remaining)
        self.last_sync = report
        return report
