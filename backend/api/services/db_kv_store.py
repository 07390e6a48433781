"""Database-backed key-value store.

Implements :class:`bustrack.storage.KeyValueStore` over the ``kv_entries``
table so shares, cached tracking data and the offline action queue survive
restarts and can be shared between API workers.  Each call runs in its own
short transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.api.db.models import KeyValueEntry
from bustrack.storage import StorageError

logger = logging.getLogger(__name__)


class SqlKeyValueStore:
    """Key-value store persisted through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(KeyValueEntry, key)
                return entry.value if entry is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read key {key}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(KeyValueEntry(key=key, value=value))
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to write key {key}") from exc

    async def remove(self, key: str) -> None:
        await self.multi_remove([key])

    async def keys(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(KeyValueEntry.key))
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError("Failed to list keys") from exc

    async def multi_remove(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        if not key_list:
            return
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key.in_(key_list)))
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to remove {len(key_list)} key(s)") from exc
        logger.debug("Removed %d key(s) from kv_entries", len(key_list))
