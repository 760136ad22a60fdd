from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from gastozap.core.config import Settings, get_settings
from gastozap.core.kv_store import KeyValueStore, MemoryStore
from gastozap.core.runtime import AIRuntimeConfig, ConfigSource
from gastozap.services.ai.common.cache import ResultCache
from gastozap.services.ai.common.ledger import NullUsageLedger, SqlUsageLedger, UsageLedger
from gastozap.services.ai.common.orchestrator import ProviderOrchestrator
from gastozap.services.ai.common.providers import ProviderRegistry, build_registry
from gastozap.services.pipeline.contracts import CategorySource, TransactionSink
from gastozap.services.pipeline.service import ExtractionPipeline
from gastozap.services.rag.index import CategoryIndex
from gastozap.services.rag.search_log import NullSearchLog, SearchLog, SqlSearchLog
from gastozap.services.rag.synonyms import SynonymTable
from gastozap.utils.usage_meter import UsageMeter

logger = logging.getLogger(__name__)


@dataclass
class AIServices:
    store: KeyValueStore
    config_source: ConfigSource
    meter: UsageMeter
    cache: ResultCache
    registry: ProviderRegistry
    ledger: UsageLedger
    search_log: SearchLog
    index: CategoryIndex
    orchestrator: ProviderOrchestrator
    pipeline: ExtractionPipeline


def build_services(
    settings: Optional[Settings] = None,
    *,
    store: Optional[KeyValueStore] = None,
    registry: Optional[ProviderRegistry] = None,
    ledger: Optional[UsageLedger] = None,
    search_log: Optional[SearchLog] = None,
    sink: Optional[TransactionSink] = None,
    category_source: Optional[CategorySource] = None,
) -> AIServices:
    """Wire every AI component around one shared store and config source."""
    settings = settings or get_settings()
    store = store or MemoryStore()
    config_source = ConfigSource(AIRuntimeConfig.from_settings(settings))
    meter = UsageMeter(store, config_source)
    cache = ResultCache(store, config_source)
    registry = registry if registry is not None else build_registry(settings)

    if ledger is None or search_log is None:
        from gastozap.core.dependencies import SessionLocal

        if SessionLocal is None:
            logger.info("DATABASE_URL not set, AI usage ledger and search log disabled")
        if ledger is None:
            if SessionLocal is not None:
                ledger = SqlUsageLedger(SessionLocal, store_raw=settings.ai_debug_store_raw)
            else:
                ledger = NullUsageLedger()
        if search_log is None:
            search_log = SqlSearchLog(SessionLocal) if SessionLocal is not None else NullSearchLog()

    index = CategoryIndex(SynonymTable.load(settings.rag_synonyms_path))
    orchestrator = ProviderOrchestrator(registry, meter, cache, config_source, ledger=ledger)
    pipeline = ExtractionPipeline(
        index,
        orchestrator,
        config_source,
        sink=sink,
        category_source=category_source,
        search_log=search_log,
    )
    logger.info(
        "AI services ready: providers=%s synonyms=%s",
        registry.names(),
        index.synonyms.version,
    )
    return AIServices(
        store=store,
        config_source=config_source,
        meter=meter,
        cache=cache,
        registry=registry,
        ledger=ledger,
        search_log=search_log,
        index=index,
        orchestrator=orchestrator,
        pipeline=pipeline,
    )


def get_services(request: Request) -> AIServices:
    return request.app.state.services
