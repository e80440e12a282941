"""Cache backends used for identity links and reference data.

Both backends expose the same async interface:
  get(key) -> value or None
  set(key, value, ttl=None)
  wrap(key, producer, ttl=None) -> cached value, computing it if absent
  delete(key)
"""
import inspect
import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from db.connection import get_db
from db.repositories import cache_entries as cache_repo

logger = logging.getLogger(__name__)


class BaseCache:
    async def get(self, key: str) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def wrap(self, key: str, producer: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value for key, calling producer and caching on a miss.

        producer may be a plain callable or return an awaitable.
        """
        value = await self.get(key)
        if value is not None:
            return value
        value = producer()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self.set(key, value, ttl=ttl)
        return value


class MemoryCache(BaseCache):
    """Bounded in-process LRU cache with optional per-entry TTL (seconds).

    Entries do not survive the process, so identity links kept here are
    lost on restart.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self.ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class DatabaseCache(BaseCache):
    """PostgreSQL-backed cache (sync.cache_entries); concurrent writers: last write wins."""

    def __init__(self, ttl: Optional[float] = None):
        self.ttl = ttl

    async def get(self, key: str) -> Any:
        async with get_db() as session:
            return await cache_repo.get_value(session, key)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self.ttl
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=ttl) if ttl is not None else None
        )
        async with get_db() as session:
            await cache_repo.upsert(session, key, value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with get_db() as session:
            await cache_repo.delete_key(session, key)
