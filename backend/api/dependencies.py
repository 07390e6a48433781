"""FastAPI dependency injection functions.

The managers are constructed once in the application lifespan and kept on
``app.state``; these helpers hand them to route functions.  Tests swap in
isolated instances by replacing ``app.state.services``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request

from backend.api.config import Settings
from bustrack.connectivity import ConnectivityMonitor, ConnectivityProbe
from bustrack.constants import now_ms
from bustrack.offline import OfflineCacheManager
from bustrack.sharing import ShareTokenManager
from bustrack.storage import KeyValueStore
from bustrack.tracking import BusPositionFeed, TrackingService
from bustrack.traffic_client import TrafficClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routers need, wired around one key-value store."""

    store: KeyValueStore
    monitor: ConnectivityMonitor
    shares: ShareTokenManager
    offline: OfflineCacheManager
    feed: BusPositionFeed
    tracking: TrackingService
    settings: Settings
    clock: Callable[[], int] = now_ms


def build_services(
    settings: Settings,
    store: KeyValueStore,
    clock: Callable[[], int] = now_ms,
    traffic: TrafficClient | None = None,
) -> Services:
    """Construct and wire the managers for one process."""
    monitor = ConnectivityMonitor()
    probe = (
        ConnectivityProbe(settings.connectivity_probe_url)
        if settings.connectivity_probe_url
        else None
    )
    offline = OfflineCacheManager(
        store,
        probe=probe,
        clock=clock,
        requeue_failed=settings.requeue_failed_actions,
    )
    offline.attach(monitor)

    if traffic is None and settings.traffic_api_key:
        traffic = TrafficClient(settings.traffic_api_url, settings.traffic_api_key)
    if traffic is None:
        logger.info("No traffic API key configured; tracking will serve cached data only")

    feed = BusPositionFeed()
    return Services(
        store=store,
        monitor=monitor,
        shares=ShareTokenManager(store, base_share_url=settings.share_base_url, clock=clock),
        offline=offline,
        feed=feed,
        tracking=TrackingService(offline, feed, traffic, clock=clock),
        settings=settings,
        clock=clock,
    )


def get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


def get_share_manager(request: Request) -> ShareTokenManager:
    return get_services(request).shares


def get_offline_manager(request: Request) -> OfflineCacheManager:
    return get_services(request).offline


def get_tracking_service(request: Request) -> TrackingService:
    return get_services(request).tracking
