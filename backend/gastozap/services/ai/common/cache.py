"""Content-addressed cache of provider results with sliding expiry."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from gastozap.core.errors import StorageDegraded
from gastozap.core.kv_store import KeyValueStore, guarded
from gastozap.core.runtime import AIRuntimeConfig, ConfigSource, OperationKind

logger = logging.getLogger(__name__)

CACHE_PREFIX = "ai-cache"
_SIZE_SAMPLE = 10
_TOP_HITS_SAMPLE = 100
_TOP_HITS = 10

CacheInput = Union[str, bytes, bytearray]


class CacheEntry(BaseModel):
    provider: str
    operation: OperationKind
    payload: Any = None
    created_at: datetime
    hit_count: int = 0


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def cache_key(provider: str, operation: OperationKind, value: CacheInput) -> str:
    """Stable key for *value*; binary input is hashed once before keying."""
    op = OperationKind(operation).value
    if isinstance(value, (bytes, bytearray)):
        digest = _sha256(f"{provider}:{op}:{_sha256(bytes(value))}".encode())
        return f"{CACHE_PREFIX}:{provider}:buffer:{digest}"
    normalized = str(value).strip().lower()
    digest = _sha256(f"{provider}:{op}:{normalized}".encode())
    return f"{CACHE_PREFIX}:{provider}:text:{digest}"


class ResultCache:
    def __init__(self, store: KeyValueStore, config_source: ConfigSource) -> None:
        self._store = store
        self._config_source = config_source

    def _config(self, config: Optional[AIRuntimeConfig]) -> AIRuntimeConfig:
        return config or self._config_source.snapshot()

    async def get(
        self,
        provider: str,
        operation: OperationKind,
        value: CacheInput,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> Optional[CacheEntry]:
        cfg = self._config(config)
        if not cfg.cache_enabled:
            return None
        key = cache_key(provider, operation, value)
        try:
            raw = await guarded(self._store.get(key), cfg.storage_timeout_seconds)
            if raw is None:
                return None
            try:
                entry = CacheEntry.model_validate_json(raw)
            except ValidationError:
                logger.warning("Dropping unreadable cache entry %s", key)
                await guarded(self._store.delete(key), cfg.storage_timeout_seconds)
                return None
            entry = entry.model_copy(update={"hit_count": entry.hit_count + 1})
            await guarded(
                self._store.set(key, entry.model_dump_json(), cfg.ttl_for(operation)),
                cfg.storage_timeout_seconds,
            )
        except StorageDegraded as exc:
            logger.warning("Cache read degraded for %s/%s: %s", provider, operation, exc)
            return None
        logger.debug("Cache hit %s (hits=%d)", key, entry.hit_count)
        return entry

    async def put(
        self,
        provider: str,
        operation: OperationKind,
        value: CacheInput,
        payload: Any,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> None:
        cfg = self._config(config)
        if not cfg.cache_enabled:
            return
        entry = CacheEntry(
            provider=provider,
            operation=operation,
            payload=payload,
            created_at=datetime.now(timezone.utc),
        )
        key = cache_key(provider, operation, value)
        try:
            await guarded(
                self._store.set(key, entry.model_dump_json(), cfg.ttl_for(operation)),
                cfg.storage_timeout_seconds,
            )
        except StorageDegraded as exc:
            logger.warning("Cache write degraded for %s/%s: %s", provider, operation, exc)

    async def stats(self) -> dict[str, Any]:
        cfg = self._config(None)
        timeout = cfg.storage_timeout_seconds
        result: dict[str, Any] = {
            "total_keys": 0,
            "text_keys": 0,
            "buffer_keys": 0,
            "estimated_size_bytes": 0,
            "top_hits": [],
        }
        try:
            text_keys = await guarded(self._store.count(f"{CACHE_PREFIX}:*:text:*"), timeout)
            buffer_keys = await guarded(self._store.count(f"{CACHE_PREFIX}:*:buffer:*"), timeout)
            result["text_keys"] = text_keys
            result["buffer_keys"] = buffer_keys
            result["total_keys"] = text_keys + buffer_keys

            sample = await guarded(self._store.keys(f"{CACHE_PREFIX}:*", limit=_TOP_HITS_SAMPLE), timeout)
            sized = 0
            sized_bytes = 0
            hits = []
            for key in sample:
                raw = await guarded(self._store.get(key), timeout)
                if raw is None:
                    continue
                if sized < _SIZE_SAMPLE:
                    sized += 1
                    sized_bytes += len(raw.encode())
                try:
                    entry = CacheEntry.model_validate_json(raw)
                except ValidationError:
                    continue
                hits.append(
                    {
                        "key": key,
                        "provider": entry.provider,
                        "operation": entry.operation.value,
                        "hit_count": entry.hit_count,
                    }
                )
        except StorageDegraded as exc:
            logger.warning("Cache stats degraded: %s", exc)
            return result

        if sized:
            result["estimated_size_bytes"] = int(sized_bytes / sized * result["total_keys"])
        hits.sort(key=lambda item: item["hit_count"], reverse=True)
        result["top_hits"] = hits[:_TOP_HITS]
        return result

    async def purge(self, provider: Optional[str] = None) -> int:
        cfg = self._config(None)
        pattern = f"{CACHE_PREFIX}:{provider}:*" if provider else f"{CACHE_PREFIX}:*"
        try:
            keys = await guarded(self._store.keys(pattern), cfg.storage_timeout_seconds)
            if not keys:
                return 0
            removed = await guarded(self._store.delete(*keys), cfg.storage_timeout_seconds)
        except StorageDegraded as exc:
            logger.warning("Cache purge degraded (%s): %s", provider or "all", exc)
            return 0
        logger.info("Purged %d cache entries for %s", removed, provider or "all providers")
        return removed
