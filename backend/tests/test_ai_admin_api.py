import asyncio
import json
import os
import tempfile
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gastozap.core.config import get_settings
from gastozap.core.container import build_services
from gastozap.core.dependencies import get_db
from gastozap.core.runtime import OperationKind
from gastozap.main import app
from gastozap.models.usage import Base
from gastozap.services.ai.common.ledger import NullUsageLedger, SqlUsageLedger, UsageRecord
from gastozap.services.ai.common.providers import ProviderRegistry
from gastozap.services.ai.common.providers.mock import MockProvider
from gastozap.services.rag.index import CategoryEntry, RetrievalMatch
from gastozap.services.rag.search_log import NullSearchLog, SearchAttempt, SqlSearchLog
from gastozap.utils.usage_meter import Metric

TOKEN = "admin-test-token"
HEADERS = {"X-Admin-Token": TOKEN}


class AIAdminApiTests(unittest.TestCase):
    def setUp(self):
        self._prev_token = os.environ.get("ADMIN_API_TOKEN")
        os.environ["ADMIN_API_TOKEN"] = TOKEN
        get_settings.cache_clear()

        self.services = build_services(
            get_settings(),
            registry=ProviderRegistry([MockProvider()]),
            ledger=NullUsageLedger(),
            search_log=NullSearchLog(),
        )
        app.state.services = self.services
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        app.state.services = None
        if self._prev_token is None:
            os.environ.pop("ADMIN_API_TOKEN", None)
        else:
            os.environ["ADMIN_API_TOKEN"] = self._prev_token
        get_settings.cache_clear()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def test_missing_or_wrong_token_is_forbidden(self):
        self.assertEqual(self.client.get("/api/v1/admin/ai/cache/stats").status_code, 403)
        resp = self.client.get("/api/v1/admin/ai/cache/stats", headers={"X-Admin-Token": "nope"})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"], "Forbidden")

    def test_admin_api_disabled_without_configured_token(self):
        os.environ["ADMIN_API_TOKEN"] = ""
        get_settings.cache_clear()
        resp = self.client.get("/api/v1/admin/ai/cache/stats", headers=HEADERS)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"], "Admin API disabled")

    # ------------------------------------------------------------------
    # Cache and usage
    # ------------------------------------------------------------------

    def test_cache_stats_and_purge(self):
        cache = self.services.cache
        asyncio.run(cache.put("openai", OperationKind.EXTRACT_TEXT, "uber 20", {"amount": "20.00"}))
        asyncio.run(cache.put("groq", OperationKind.EXTRACT_TEXT, "uber 30", {"amount": "30.00"}))

        stats = self.client.get("/api/v1/admin/ai/cache/stats", headers=HEADERS).json()
        self.assertEqual(stats["total_keys"], 2)
        self.assertEqual(stats["text_keys"], 2)

        resp = self.client.delete("/api/v1/admin/ai/cache", params={"provider": "openai"}, headers=HEADERS)
        self.assertEqual(resp.json(), {"removed": 1, "provider": "openai"})

        resp = self.client.delete("/api/v1/admin/ai/cache", headers=HEADERS)
        self.assertEqual(resp.json()["removed"], 1)

    def test_usage_and_reset(self):
        asyncio.run(self.services.meter.record_usage("openai", Metric.REQUESTS, 3))

        resp = self.client.get("/api/v1/admin/ai/usage", params={"provider": "openai"}, headers=HEADERS)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["openai"]["requests"], 3)

        resp = self.client.post("/api/v1/admin/ai/usage/reset", params={"provider": "openai"}, headers=HEADERS)
        self.assertEqual(resp.json(), {"removed": 1, "provider": "openai"})

        resp = self.client.get("/api/v1/admin/ai/usage", params={"provider": "openai"}, headers=HEADERS)
        self.assertEqual(resp.json()["openai"]["requests"], 0)

        all_usage = self.client.get("/api/v1/admin/ai/usage", headers=HEADERS).json()
        self.assertIn("mock", all_usage)

    def test_usage_summary_reads_the_ledger(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine)
        SqlUsageLedger(SessionLocal).log_usage(
            UsageRecord(provider="openai", operation="extract-text", model="gpt-4o-mini", tenant_id="t1")
        )

        def override_get_db():
            db = SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        try:
            resp = self.client.get("/api/v1/admin/ai/usage/summary", params={"tenant_id": "t1"}, headers=HEADERS)
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["total_calls"], 1)
            self.assertEqual(resp.json()["by_provider"]["openai"]["calls"], 1)

            resp = self.client.get("/api/v1/admin/ai/usage/summary", params={"tenant_id": "t1", "days": 0}, headers=HEADERS)
            self.assertEqual(resp.status_code, 422)
        finally:
            Base.metadata.drop_all(engine)
            engine.dispose()

    # ------------------------------------------------------------------
    # Runtime config, synonyms and index
    # ------------------------------------------------------------------

    @patch.dict(os.environ, {"AI_TEXT_PROVIDER": "Groq", "RAG_ENABLED": "false"}, clear=False)
    def test_config_reload_swaps_the_snapshot(self):
        before = self.services.config_source.version

        resp = self.client.post("/api/v1/admin/ai/config/reload", headers=HEADERS)

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["version"], before + 1)
        self.assertEqual(body["active"]["extract-text"], "groq")
        self.assertFalse(body["rag_enabled"])
        self.assertFalse(self.services.config_source.snapshot().rag_enabled)

    @patch.dict(os.environ, {"RAG_FAST_PATH_THRESHOLD": "not-a-number"}, clear=False)
    def test_invalid_config_reload_keeps_the_old_snapshot(self):
        before = self.services.config_source.version

        resp = self.client.post("/api/v1/admin/ai/config/reload", headers=HEADERS)

        self.assertEqual(resp.status_code, 422)
        self.assertEqual(self.services.config_source.version, before)

    def test_synonym_reload(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as fh:
            json.dump({"version": "ops-2", "synonyms": {"padoca": ["padaria"]}}, fh)
        try:
            with patch.dict(os.environ, {"RAG_SYNONYMS_PATH": fh.name}, clear=False):
                get_settings.cache_clear()
                resp = self.client.post("/api/v1/admin/ai/synonyms/reload", headers=HEADERS)
        finally:
            os.unlink(fh.name)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["version"], "ops-2")
        self.assertEqual(self.services.index.synonyms.version, "ops-2")
        self.assertTrue(self.services.index.synonyms.are_related("padaria", "padoca"))

    @patch.dict(os.environ, {"RAG_SYNONYMS_PATH": "/nonexistent/synonyms.json"}, clear=False)
    def test_synonym_reload_with_missing_file_fails(self):
        get_settings.cache_clear()
        resp = self.client.post("/api/v1/admin/ai/synonyms/reload", headers=HEADERS)
        self.assertEqual(resp.status_code, 422)

    def test_index_stats_and_purge(self):
        index = self.services.index
        index.index("t1", [CategoryEntry("food", "Alimentação")])
        index.index("t2", [CategoryEntry("pets", "Pets"), CategoryEntry("car", "Carro")])

        stats = self.client.get("/api/v1/admin/ai/index/stats", headers=HEADERS).json()
        self.assertEqual(stats["tenants"], 2)
        self.assertEqual(stats["entries"], 3)

        resp = self.client.delete("/api/v1/admin/ai/index", params={"tenant_id": "t1"}, headers=HEADERS)
        self.assertEqual(resp.json(), {"removed": 1, "tenant_id": "t1"})
        self.assertFalse(index.is_indexed("t1"))
        self.assertTrue(index.is_indexed("t2"))

    def test_learned_keywords_can_be_added_listed_and_forgotten(self):
        index = self.services.index
        index.index("t1", [CategoryEntry("food", "Alimentação", sub_category_id="super", sub_category_name="Super")])
        url = "/api/v1/admin/ai/index/t1/synonyms"

        resp = self.client.post(
            url,
            json={
                "keyword": "Assaí",
                "category_id": "food",
                "category_name": "Alimentação",
                "sub_category_id": "super",
                "sub_category_name": "Super",
            },
            headers=HEADERS,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["keyword"], "assai")
        self.assertEqual(index.query("t1", "compras no assai")[0].sub_category_id, "super")

        listed = self.client.get(url, headers=HEADERS).json()
        self.assertEqual([item["keyword"] for item in listed], ["assai"])

        resp = self.client.post(
            url, json={"keyword": "de", "category_id": "food", "category_name": "Alimentação"}, headers=HEADERS
        )
        self.assertEqual(resp.status_code, 422)

        resp = self.client.delete(url, params={"keyword": "assai"}, headers=HEADERS)
        self.assertEqual(resp.json(), {"removed": True, "tenant_id": "t1"})
        self.assertEqual(self.client.delete(url, params={"keyword": "assai"}, headers=HEADERS).status_code, 404)
        self.assertEqual(index.learned("t1"), [])

    def test_search_log_lists_failed_attempts(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine)
        log = SqlSearchLog(SessionLocal)
        hit = RetrievalMatch(category_id="food", category_name="Alimentação", score=0.9)
        log.record(SearchAttempt("t1", "FAST_MATCH", "mercado", 0.6, matches=(hit,)))
        log.record(SearchAttempt("t1", "FAST_MATCH", "padoca", 0.6))

        def override_get_db():
            db = SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        try:
            url = "/api/v1/admin/ai/index/search-log"
            resp = self.client.get(url, params={"tenant_id": "t1"}, headers=HEADERS)
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(len(resp.json()), 2)

            resp = self.client.get(url, params={"tenant_id": "t1", "failed_only": "true"}, headers=HEADERS)
            self.assertEqual([row["query"] for row in resp.json()], ["padoca"])
            self.assertFalse(resp.json()[0]["success"])
        finally:
            Base.metadata.drop_all(engine)
            engine.dispose()

    # ------------------------------------------------------------------
    # Health and lifespan
    # ------------------------------------------------------------------

    def test_health_reports_services(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["providers"], ["mock"])
        self.assertEqual(body["config_version"], 1)

    def test_lifespan_builds_services(self):
        app.state.services = None
        with TestClient(app) as client:
            body = client.get("/health").json()
            self.assertEqual(body["status"], "ok")
            self.assertIn("mock", body["providers"])


if __name__ == "__main__":
    unittest.main()
