"""AI usage ledger: one row per provider attempt, with estimated cost.

PII: inputs are stored as SHA-256 hashes; raw text only with
``AI_DEBUG_STORE_RAW=true``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from gastozap.models.usage import AIUsageLog

logger = logging.getLogger(__name__)

# USD per 1M tokens.
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-3.5-turbo": (0.5, 1.5),
    "whisper-1": (0.006, 0.0),
    "gemini-1.5-pro": (1.25, 5.0),
    "gemini-1.5-flash": (0.075, 0.3),
    "gemini-1.0-pro": (0.5, 1.5),
    "llama-3.1-70b": (0.59, 0.79),
    "llama-3.1-8b": (0.05, 0.08),
    "mixtral-8x7b": (0.24, 0.24),
    "whisper-large-v3": (0.111, 0.0),
    "deepseek-chat": (0.27, 1.1),
    "claude-3-5-haiku": (0.8, 4.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "mock": (0.0, 0.0),
}
_DEFAULT_COST = (1.0, 2.0)


def _cost_rates(model: str) -> tuple[float, float]:
    if model in MODEL_COSTS:
        return MODEL_COSTS[model]
    # Dated / suffixed variants (e.g. "gpt-4o-mini-2024-07-18") use the longest known prefix.
    candidates = [name for name in MODEL_COSTS if model.startswith(name)]
    if candidates:
        return MODEL_COSTS[max(candidates, key=len)]
    return _DEFAULT_COST


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> Decimal:
    input_rate, output_rate = _cost_rates(model or "")
    cost = (prompt_tokens / 1_000_000) * input_rate + (completion_tokens / 1_000_000) * output_rate
    return Decimal(str(round(cost, 6)))


def hash_input(value: Union[str, bytes, None]) -> Optional[str]:
    if value is None:
        return None
    data = value if isinstance(value, (bytes, bytearray)) else str(value).encode()
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class UsageRecord:
    provider: str
    operation: str
    model: str = ""
    tenant_id: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    success: bool = True
    cache_hit: bool = False
    input_hash: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageLedger:
    """Sink for usage records. The base implementation discards them."""

    def log_usage(self, record: UsageRecord) -> None:
        return None


class NullUsageLedger(UsageLedger):
    pass


class SqlUsageLedger(UsageLedger):
    def __init__(self, session_factory: Callable[[], Session], *, store_raw: bool = False) -> None:
        self._session_factory = session_factory
        self._store_raw = store_raw

    def log_usage(self, record: UsageRecord) -> None:
        metadata = dict(record.metadata)
        if not self._store_raw:
            metadata.pop("input_raw", None)
            metadata.pop("response_raw", None)

        db = self._session_factory()
        try:
            db.add(
                AIUsageLog(
                    tenant_id=record.tenant_id,
                    provider=record.provider,
                    model=record.model,
                    operation=record.operation,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    latency_ms=record.latency_ms,
                    success=record.success,
                    cache_hit=record.cache_hit,
                    estimated_cost_usd=estimate_cost(record.model, record.prompt_tokens, record.completion_tokens),
                    input_hash=record.input_hash,
                    error=record.error[:1000] if record.error else None,
                    usage_meta=metadata or None,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def usage_summary(db: Session, tenant_id: str, *, days: int = 30) -> dict[str, Any]:
    """Calls, tokens and cost for one tenant, grouped by operation and provider."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    base = db.query(AIUsageLog).filter(AIUsageLog.tenant_id == tenant_id, AIUsageLog.created_at >= since)

    totals = base.with_entities(
        func.count(AIUsageLog.id),
        func.coalesce(func.sum(AIUsageLog.total_tokens), 0),
        func.coalesce(func.sum(AIUsageLog.estimated_cost_usd), 0),
    ).one()

    def _grouped(column) -> dict[str, dict[str, Any]]:
        rows = (
            base.with_entities(
                column,
                func.count(AIUsageLog.id),
                func.coalesce(func.sum(AIUsageLog.estimated_cost_usd), 0),
            )
            .group_by(column)
            .all()
        )
        return {name: {"calls": int(calls), "cost_usd": float(cost)} for name, calls, cost in rows}

    return {
        "tenant_id": tenant_id,
        "days": days,
        "total_calls": int(totals[0] or 0),
        "total_tokens": int(totals[1] or 0),
        "total_cost_usd": float(totals[2] or 0),
        "by_operation": _grouped(AIUsageLog.operation),
        "by_provider": _grouped(AIUsageLog.provider),
    }
