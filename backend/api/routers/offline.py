"""Offline cache, action queue and connectivity endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException

from backend.api.dependencies import Services, get_offline_manager, get_services
from backend.api.schemas.offline import (
    CacheClearResponse,
    CacheEntryResponse,
    ConnectivityResponse,
    ConnectivityUpdate,
    QueueActionRequest,
    QueuedActionResponse,
    QueueResponse,
    SyncReportResponse,
)
from bustrack.constants import CacheNamespace
from bustrack.offline import OfflineCacheManager

router = APIRouter()

OfflineDep = Annotated[OfflineCacheManager, Depends(get_offline_manager)]
ServicesDep = Annotated[Services, Depends(get_services)]


def _namespace(value: str) -> CacheNamespace:
    try:
        return CacheNamespace(value)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown cache namespace {value}") from exc


@router.put("/cache/{namespace}/{key}", status_code=204)
async def put_cache_entry(
    namespace: str,
    key: str,
    offline: OfflineDep,
    payload: Annotated[Any, Body()],
) -> None:
    """Write a payload into a cache namespace."""
    await offline.cache_entry(_namespace(namespace), key, payload)


@router.get("/cache/{namespace}/{key}", response_model=CacheEntryResponse)
async def get_cache_entry(namespace: str, key: str, services: ServicesDep) -> CacheEntryResponse:
    """Read a cached payload. Map data also reports whether it is stale."""
    ns = _namespace(namespace)
    entry = await services.offline.get_cached(ns, key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No cached {ns.value} for {key}")

    now = services.clock()
    expired = None
    if ns is CacheNamespace.MAP_DATA:
        expired = entry.age_ms(now) > services.settings.map_cache_max_age_ms
    return CacheEntryResponse(
        namespace=ns.value,
        key=key,
        payload=entry.payload,
        timestamp=entry.timestamp,
        age_ms=entry.age_ms(now),
        expired=expired,
    )


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(offline: OfflineDep) -> CacheClearResponse:
    """Drop every cached map, location, route and traffic entry."""
    return CacheClearResponse(cleared=await offline.clear_all_cached_data())


@router.post("/queue", status_code=202)
async def queue_action(body: QueueActionRequest, offline: OfflineDep) -> dict[str, str]:
    """Defer an action until connectivity returns."""
    await offline.queue_action(body.type, body.data)
    return {"status": "queued"}


@router.get("/queue", response_model=QueueResponse)
async def list_queue(offline: OfflineDep) -> QueueResponse:
    actions = await offline.get_queued_actions()
    return QueueResponse(
        actions=[
            QueuedActionResponse(type=a.action_type, data=a.data, timestamp=a.timestamp)
            for a in actions
        ]
    )


@router.post("/sync", response_model=SyncReportResponse)
async def sync_queue(offline: OfflineDep) -> SyncReportResponse:
    """Replay the queue now, regardless of connectivity transitions."""
    return SyncReportResponse.from_report(await offline.sync_offline_data())


@router.get("/connectivity", response_model=ConnectivityResponse)
async def get_connectivity(offline: OfflineDep) -> ConnectivityResponse:
    return ConnectivityResponse(is_connected=offline.is_connected)


@router.post("/connectivity", response_model=ConnectivityResponse)
async def publish_connectivity(
    body: ConnectivityUpdate, services: ServicesDep
) -> ConnectivityResponse:
    """Report a network status change from the platform.

    Publishing goes through the connectivity monitor, so the offline manager
    sees it like any other status callback; a reconnection triggers replay.
    """
    offline = services.offline
    was_connected = offline.is_connected
    await services.monitor.publish(body.is_connected)

    sync = None
    if body.is_connected and not was_connected and offline.last_sync is not None:
        sync = SyncReportResponse.from_report(offline.last_sync)
    return ConnectivityResponse(is_connected=offline.is_connected, sync=sync)
