"""Pydantic schemas for the offline cache, action queue and connectivity."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from bustrack.offline import SyncReport


class CacheEntryResponse(BaseModel):
    namespace: str
    key: str
    payload: Any
    timestamp: int
    age_ms: int
    expired: bool | None = None


class CacheClearResponse(BaseModel):
    cleared: int


class QueueActionRequest(BaseModel):
    type: str = Field(min_length=1)
    data: Any = None


class QueuedActionResponse(BaseModel):
    type: str
    data: Any
    timestamp: int


class QueueResponse(BaseModel):
    actions: list[QueuedActionResponse]


class SyncReportResponse(BaseModel):
    processed: int
    failed: int
    skipped: int
    requeued: int

    @classmethod
    def from_report(cls, report: SyncReport) -> SyncReportResponse:
        return cls(
            processed=report.processed,
            failed=report.failed,
            skipped=report.skipped,
            requeued=report.requeued,
        )


class ConnectivityUpdate(BaseModel):
    is_connected: bool


class ConnectivityResponse(BaseModel):
    is_connected: bool
    sync: SyncReportResponse | None = None
