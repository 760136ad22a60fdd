"""AI admin API: cache, rate-limit counters, runtime config and retrieval index.

Endpoints (all under /admin/ai, X-Admin-Token required):
  GET    /cache/stats          : key counts, size estimate, top hits
  DELETE /cache                : purge cached results (optionally ?provider=)
  GET    /usage                : current-minute usage per provider
  POST   /usage/reset          : clear rate-limit counters (optionally ?provider=)
  GET    /usage/summary        : per-tenant calls and cost from the usage ledger
  POST   /config/reload        : re-read settings into a fresh runtime snapshot
  POST   /synonyms/reload      : reload the shared synonym table
  DELETE /index                : drop indexed categories (optionally ?tenant_id=)
  GET    /index/search-log     : latest retrieval attempts (?tenant_id=, ?failed_only=)
  GET    /index/{tenant}/synonyms : learned keywords for a tenant
  POST   /index/{tenant}/synonyms : learn a keyword for a category
  DELETE /index/{tenant}/synonyms : forget a learned keyword (?keyword=)
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gastozap.core.config import get_settings
from gastozap.core.container import AIServices, get_services
from gastozap.core.dependencies import get_db
from gastozap.services.ai.common.ledger import usage_summary
from gastozap.services.rag.index import LearnedSynonym
from gastozap.services.rag.search_log import SEARCH_LOG_LIMIT, search_attempts
from gastozap.services.rag.synonyms import SynonymTable

logger = logging.getLogger(__name__)


def require_admin_token(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    settings = get_settings()
    if not settings.admin_api_token:
        raise HTTPException(403, "Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_api_token):
        logger.warning("AI admin: invalid or missing token")
        raise HTTPException(403, "Forbidden")


router = APIRouter(prefix="/admin/ai", dependencies=[Depends(require_admin_token)])


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@router.get("/cache/stats")
async def cache_stats(services: AIServices = Depends(get_services)):
    return await services.cache.stats()


@router.delete("/cache")
async def purge_cache(
    provider: Optional[str] = Query(None),
    services: AIServices = Depends(get_services),
):
    removed = await services.cache.purge(provider)
    logger.info("AI admin: purged %d cache keys (%s)", removed, provider or "all")
    return {"removed": removed, "provider": provider}


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@router.get("/usage")
async def current_usage(
    provider: Optional[str] = Query(None),
    services: AIServices = Depends(get_services),
):
    if provider:
        return {provider: await services.meter.current_usage(provider)}
    return await services.meter.all_usage()


@router.post("/usage/reset")
async def reset_usage(
    provider: Optional[str] = Query(None),
    services: AIServices = Depends(get_services),
):
    removed = await services.meter.reset(provider)
    return {"removed": removed, "provider": provider}


@router.get("/usage/summary")
def tenant_usage_summary(
    tenant_id: str = Query(..., min_length=1),
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return usage_summary(db, tenant_id, days=days)


# ---------------------------------------------------------------------------
# Runtime config and retrieval
# ---------------------------------------------------------------------------


@router.post("/config/reload")
async def reload_config(services: AIServices = Depends(get_services)):
    try:
        fresh = services.config_source.reload()
    except ValueError as exc:
        logger.warning("AI admin: config reload rejected: %s", exc)
        raise HTTPException(422, f"Invalid configuration: {exc}")
    return {
        "version": services.config_source.version,
        "active": {op.value: name for op, name in fresh.active.items()},
        "fallback_enabled": fresh.fallback_enabled,
        "rag_enabled": fresh.rag_enabled,
    }


@router.post("/synonyms/reload")
async def reload_synonyms(services: AIServices = Depends(get_services)):
    settings = get_settings()
    try:
        table = SynonymTable.load(settings.rag_synonyms_path)
    except (OSError, ValueError) as exc:
        logger.warning("AI admin: synonym reload failed: %s", exc)
        raise HTTPException(422, f"Invalid synonym table: {exc}")
    version = services.index.reload_synonyms(table)
    return {"version": version, "terms": len(table)}


@router.get("/index/stats")
async def index_stats(services: AIServices = Depends(get_services)):
    return services.index.stats()


@router.delete("/index")
async def purge_index(
    tenant_id: Optional[str] = Query(None),
    services: AIServices = Depends(get_services),
):
    removed = services.index.purge(tenant_id)
    return {"removed": removed, "tenant_id": tenant_id}


# ---------------------------------------------------------------------------
# Learned keywords and search analytics
# ---------------------------------------------------------------------------


class LearnKeywordRequest(BaseModel):
    keyword: str = Field(..., min_length=1, max_length=100)
    category_id: str = Field(..., min_length=1)
    category_name: str = Field(..., min_length=1)
    sub_category_id: Optional[str] = None
    sub_category_name: Optional[str] = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)


def _learned_row(item: LearnedSynonym) -> dict:
    return {
        "keyword": item.keyword,
        "category_id": item.category_id,
        "category_name": item.category_name,
        "sub_category_id": item.sub_category_id,
        "sub_category_name": item.sub_category_name,
        "confidence": item.confidence,
        "usage_count": item.usage_count,
        "updated_at": item.updated_at.isoformat(),
    }


@router.get("/index/search-log")
def recent_search_attempts(
    tenant_id: Optional[str] = Query(None),
    failed_only: bool = Query(False),
    limit: int = Query(SEARCH_LOG_LIMIT, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return search_attempts(db, tenant_id=tenant_id, failed_only=failed_only, limit=limit)


@router.get("/index/{tenant_id}/synonyms")
async def list_learned(tenant_id: str, services: AIServices = Depends(get_services)):
    return [_learned_row(item) for item in services.index.learned(tenant_id)]


@router.post("/index/{tenant_id}/synonyms")
async def learn_keyword(
    tenant_id: str,
    body: LearnKeywordRequest,
    services: AIServices = Depends(get_services),
):
    try:
        learned = services.index.learn(
            tenant_id,
            body.keyword,
            category_id=body.category_id,
            category_name=body.category_name,
            sub_category_id=body.sub_category_id,
            sub_category_name=body.sub_category_name,
            confidence=body.confidence,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    logger.info("AI admin: learned %r for tenant %s", learned.keyword, tenant_id)
    return _learned_row(learned)


@router.delete("/index/{tenant_id}/synonyms")
async def forget_keyword(
    tenant_id: str,
    keyword: str = Query(..., min_length=1),
    services: AIServices = Depends(get_services),
):
    if not services.index.forget(tenant_id, keyword):
        raise HTTPException(404, "Keyword not learned for this tenant")
    return {"removed": True, "tenant_id": tenant_id}
