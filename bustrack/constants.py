"""Shared constants for the bustrack client core.

Centralises storage key names, default lifetimes and the share link base URL
used across the sharing, offline and tracking modules.
"""

from __future__ import annotations

import time
from enum import StrEnum

# Share links
DEFAULT_SHARE_BASE_URL: str = "https://bustickets.app/track/"
DEFAULT_SHARE_EXPIRY_MINUTES: int = 60
MS_PER_MINUTE: int = 60_000

SHARE_KEY_PREFIX: str = "share_"
ACTIVE_SHARES_KEY: str = "active_shares"

# Offline cache
DEFAULT_MAP_CACHE_MAX_AGE_MS: int = 24 * 60 * MS_PER_MINUTE
OFFLINE_ACTION_QUEUE_KEY: str = "offline_action_queue"


class CacheNamespace(StrEnum):
    """Logical groupings for cached tracking data."""

    MAP_DATA = "map_data"
    BUS_LOCATION = "bus_location"
    ROUTE_DATA = "route_data"
    TRAFFIC_DATA = "traffic_data"


# Tracking estimates
BASE_TRAVEL_MINUTES: int = 30
DELAYED_THRESHOLD_MINUTES: int = 15
ARRIVING_DISTANCE_KM: float = 1.0


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000
