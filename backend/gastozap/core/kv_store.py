"""Key/value substrate shared by the usage meter and the result cache."""

from __future__ import annotations

import abc
import asyncio
import fnmatch
import itertools
import logging
import time
from threading import Lock
from typing import Awaitable, Optional, TypeVar

from gastozap.core.errors import StorageDegraded

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_KEYS = 200_000
_PRUNE_INTERVAL_SECONDS = 60


class KeyValueStore(abc.ABC):
    """Minimal async contract modelled on a Redis subset."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abc.abstractmethod
    async def incr_expire(self, key: str, amount: int, ttl_seconds: int) -> int:
        """Atomically add *amount* to *key* and (re)set its expiry."""

    @abc.abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abc.abstractmethod
    async def keys(self, pattern: str, limit: Optional[int] = None) -> list[str]:
        ...

    @abc.abstractmethod
    async def count(self, pattern: str) -> int:
        ...


class MemoryStore(KeyValueStore):
    """In-process store with lazy TTL eviction and periodic pruning.

    Past ``max_keys`` the least recently written keys are evicted.
    """

    def __init__(
        self,
        *,
        max_keys: int = _MAX_KEYS,
        prune_interval_seconds: int = _PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = Lock()
        self._max_keys = max(1, int(max_keys))
        self._prune_interval_seconds = max(1, int(prune_interval_seconds))
        self._last_prune_at = 0.0

    def _live(self, key: str, now: float) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return None
        return value

    def _maybe_prune(self, now: float) -> None:
        over_capacity = len(self._data) > self._max_keys
        if not over_capacity and (now - self._last_prune_at) < self._prune_interval_seconds:
            return
        stale = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for key in stale:
            del self._data[key]
        self._last_prune_at = now

        excess = len(self._data) - self._max_keys
        if excess > 0:
            # Least recently written keys go first, down to a 90% low-water mark.
            victims = list(itertools.islice(self._data, excess + self._max_keys // 10))
            for key in victims:
                del self._data[key]
            logger.warning("MemoryStore over capacity (%d keys); evicted %d", self._max_keys, len(victims))

    async def get(self, key: str) -> Optional[str]:
        now = time.time()
        with self._lock:
            return self._live(key, now)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        now = time.time()
        expires_at = now + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (str(value), expires_at)
            self._maybe_prune(now)

    async def incr_expire(self, key: str, amount: int, ttl_seconds: int) -> int:
        now = time.time()
        with self._lock:
            current = self._live(key, now)
            new_value = int(current or 0) + int(amount)
            self._data.pop(key, None)
            self._data[key] = (str(new_value), now + ttl_seconds)
            self._maybe_prune(now)
            return new_value

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    async def keys(self, pattern: str, limit: Optional[int] = None) -> list[str]:
        now = time.time()
        found: list[str] = []
        with self._lock:
            for key in list(self._data):
                if limit is not None and len(found) >= limit:
                    break
                if fnmatch.fnmatchcase(key, pattern) and self._live(key, now) is not None:
                    found.append(key)
        return found

    async def count(self, pattern: str) -> int:
        return len(await self.keys(pattern))

    def reset(self) -> None:
        with self._lock:
            self._data.clear()
            self._last_prune_at = 0.0


async def guarded(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await a store call under *timeout_seconds*; any failure becomes ``StorageDegraded``."""
    try:
        if timeout_seconds and timeout_seconds > 0:
            return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
        return await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        raise StorageDegraded(f"{type(exc).__name__}: {exc}") from exc
