import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from gastozap.core.errors import StorageDegraded
from gastozap.core.kv_store import KeyValueStore, guarded
from gastozap.core.runtime import AIRuntimeConfig, ConfigSource

logger = logging.getLogger(__name__)

_BUCKET_MS = 60_000
# Counters outlive their minute so reads just after the boundary still see them.
_WINDOW_TTL_SECONDS = 120
_KEY_PREFIX = "ratelimit"


class Metric(str, Enum):
    REQUESTS = "requests"
    TOKENS = "tokens"


def _current_bucket() -> int:
    return int(time.time() * 1000) // _BUCKET_MS


class UsageMeter:
    """Hard per-minute caps per (provider, metric), failing open on storage errors."""

    def __init__(self, store: KeyValueStore, config_source: ConfigSource) -> None:
        self._store = store
        self._config_source = config_source

    def _config(self, config: Optional[AIRuntimeConfig]) -> AIRuntimeConfig:
        return config or self._config_source.snapshot()

    @staticmethod
    def _key(provider: str, metric: Metric, bucket: int) -> str:
        return f"{_KEY_PREFIX}:{provider}:{metric.value}:{bucket}"

    @staticmethod
    def _limit(config: AIRuntimeConfig, provider: str, metric: Metric) -> int:
        limits = config.limit_for(provider)
        return limits.rpm if metric == Metric.REQUESTS else limits.tpm

    async def _read(self, provider: str, metric: Metric, bucket: int, timeout: float) -> int:
        raw = await guarded(self._store.get(self._key(provider, metric, bucket)), timeout)
        return int(raw or 0)

    async def check_limit(
        self,
        provider: str,
        metric: Metric,
        estimated_amount: int = 1,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> bool:
        cfg = self._config(config)
        limit = self._limit(cfg, provider, Metric(metric))
        if limit <= 0:
            return True
        try:
            current = await self._read(provider, Metric(metric), _current_bucket(), cfg.storage_timeout_seconds)
        except StorageDegraded as exc:
            logger.warning("Usage meter degraded, allowing %s/%s: %s", provider, metric, exc)
            return True
        allowed = current + max(0, int(estimated_amount)) <= limit
        if not allowed:
            logger.info(
                "Rate limit reached for %s/%s: %d + %d > %d",
                provider,
                Metric(metric).value,
                current,
                estimated_amount,
                limit,
            )
        return allowed

    async def allows(
        self,
        provider: str,
        estimated_tokens: int,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> bool:
        """Check both the request cap and the token cap for one upcoming call."""
        cfg = self._config(config)
        if not await self.check_limit(provider, Metric.REQUESTS, 1, config=cfg):
            return False
        return await self.check_limit(provider, Metric.TOKENS, estimated_tokens, config=cfg)

    async def record_usage(
        self,
        provider: str,
        metric: Metric,
        amount: int,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> None:
        if amount <= 0:
            return
        cfg = self._config(config)
        key = self._key(provider, Metric(metric), _current_bucket())
        try:
            await guarded(
                self._store.incr_expire(key, int(amount), _WINDOW_TTL_SECONDS),
                cfg.storage_timeout_seconds,
            )
        except StorageDegraded as exc:
            logger.warning("Failed to record usage for %s/%s: %s", provider, metric, exc)

    async def current_usage(self, provider: str) -> dict:
        cfg = self._config(None)
        bucket = _current_bucket()
        reset_at = datetime.fromtimestamp((bucket + 1) * _BUCKET_MS / 1000, tz=timezone.utc)
        usage = {"provider": provider, "requests": 0, "tokens": 0, "reset_at": reset_at}
        limits = cfg.limit_for(provider)
        usage["limits"] = {"rpm": limits.rpm, "tpm": limits.tpm}
        for metric in Metric:
            try:
                usage[metric.value] = await self._read(provider, metric, bucket, cfg.storage_timeout_seconds)
            except StorageDegraded as exc:
                logger.warning("Usage read degraded for %s/%s: %s", provider, metric.value, exc)
        return usage

    async def all_usage(self) -> dict[str, dict]:
        cfg = self._config(None)
        return {name: await self.current_usage(name) for name in sorted(cfg.rate_limits)}

    async def reset(self, provider: Optional[str] = None) -> int:
        cfg = self._config(None)
        pattern = f"{_KEY_PREFIX}:{provider}:*" if provider else f"{_KEY_PREFIX}:*"
        try:
            keys = await guarded(self._store.keys(pattern), cfg.storage_timeout_seconds)
            if not keys:
                return 0
            removed = await guarded(self._store.delete(*keys), cfg.storage_timeout_seconds)
        except StorageDegraded as exc:
            logger.warning("Usage reset degraded (%s): %s", provider or "all", exc)
            return 0
        logger.info("Usage counters reset for %s (%d keys)", provider or "all providers", removed)
        return removed

    async def wait_for_reset(self) -> None:
        now_ms = int(time.time() * 1000)
        remaining_ms = _BUCKET_MS - (now_ms % _BUCKET_MS)
        await asyncio.sleep(remaining_ms / 1000)
