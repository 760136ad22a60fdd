import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gastozap.api.v1.ai_admin import router as ai_admin_router
from gastozap.core.config import get_settings
from gastozap.core.container import build_services

settings = get_settings()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services(settings)
    try:
        yield
    finally:
        await app.state.services.orchestrator.flush_usage()
        await app.state.services.pipeline.flush_search_log()
        logger.info("AI services stopped")


app = FastAPI(
    title="GastoZap AI API",
    version="0.1.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
    lifespan=lifespan,
)

app.include_router(ai_admin_router, prefix="/api/v1", tags=["ai-admin"])


@app.get("/health")
async def health():
    services = getattr(app.state, "services", None)
    if services is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "providers": services.registry.names(),
        "config_version": services.config_source.version,
        "synonyms_version": services.index.synonyms.version,
    }
