"""Retrieval analytics: one row per index query the pipeline decides on.

Failed attempts (best score under the threshold) are the input for curating
synonyms and learned keywords.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from gastozap.models.rag_search import RagSearchLog
from gastozap.services.rag.index import RetrievalMatch
from gastozap.utils.text import fold

logger = logging.getLogger(__name__)

SEARCH_LOG_LIMIT = 100


@dataclass(frozen=True)
class SearchAttempt:
    tenant_id: str
    step: str
    query: str
    threshold: float
    matches: tuple[RetrievalMatch, ...] = ()
    response_time_ms: float = 0.0

    @property
    def best(self) -> Optional[RetrievalMatch]:
        return self.matches[0] if self.matches else None

    @property
    def success(self) -> bool:
        return self.best is not None and self.best.score >= self.threshold


class SearchLog:
    """Sink for search attempts. The base implementation discards them."""

    def record(self, attempt: SearchAttempt) -> None:
        return None


class NullSearchLog(SearchLog):
    pass


class SqlSearchLog(SearchLog):
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(self, attempt: SearchAttempt) -> None:
        best = attempt.best
        db = self._session_factory()
        try:
            db.add(
                RagSearchLog(
                    tenant_id=attempt.tenant_id,
                    step=attempt.step,
                    query=attempt.query,
                    query_normalized=fold(attempt.query),
                    matches=[_match_row(m) for m in attempt.matches] or None,
                    match_count=len(attempt.matches),
                    best_match=_label(best) if best else None,
                    best_score=best.score if best else None,
                    threshold=attempt.threshold,
                    success=attempt.success,
                    response_time_ms=attempt.response_time_ms,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.debug("Search attempt %s for tenant %s logged (success=%s)", attempt.step, attempt.tenant_id, attempt.success)


def _label(match: RetrievalMatch) -> str:
    if match.sub_category_name:
        return f"{match.category_name} > {match.sub_category_name}"
    return match.category_name


def _match_row(match: RetrievalMatch) -> dict[str, Any]:
    return {
        "category_id": match.category_id,
        "sub_category_id": match.sub_category_id,
        "name": _label(match),
        "score": match.score,
    }


def search_attempts(
    db: Session,
    *,
    tenant_id: Optional[str] = None,
    failed_only: bool = False,
    limit: int = SEARCH_LOG_LIMIT,
) -> list[dict[str, Any]]:
    """Latest attempts first, optionally only those that missed their threshold."""
    query = db.query(RagSearchLog)
    if tenant_id:
        query = query.filter(RagSearchLog.tenant_id == tenant_id)
    if failed_only:
        query = query.filter(RagSearchLog.success.is_(False))
    rows = query.order_by(RagSearchLog.created_at.desc()).limit(limit).all()
    return [
        {
            "id": row.id,
            "tenant_id": row.tenant_id,
            "step": row.step,
            "query": row.query,
            "best_match": row.best_match,
            "best_score": row.best_score,
            "threshold": row.threshold,
            "success": row.success,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
