import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gastozap.models.usage import AIUsageLog, Base
from gastozap.services.ai.common.ledger import SqlUsageLedger, UsageRecord, usage_summary


def _record(**overrides) -> UsageRecord:
    fields = {
        "provider": "openai",
        "operation": "extract-text",
        "model": "gpt-4o-mini",
        "tenant_id": "t1",
        "prompt_tokens": 1_000_000,
        "completion_tokens": 1_000_000,
        "latency_ms": 120.0,
        "input_hash": "a" * 64,
        "metadata": {"input_raw": "gastei 50 no mercado", "response_raw": "{}", "attempt": 1},
    }
    fields.update(overrides)
    return UsageRecord(**fields)


class SqlUsageLedgerTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _rows(self) -> list[AIUsageLog]:
        db = self.SessionLocal()
        try:
            return db.query(AIUsageLog).all()
        finally:
            db.close()

    def test_raw_payloads_are_dropped_by_default(self):
        SqlUsageLedger(self.SessionLocal).log_usage(_record())

        rows = self._rows()
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.usage_meta, {"attempt": 1})
        self.assertEqual(row.total_tokens, 2_000_000)
        self.assertEqual(Decimal(str(row.estimated_cost_usd)), Decimal("0.75"))
        self.assertEqual(row.input_hash, "a" * 64)

    def test_raw_payloads_kept_in_debug_mode(self):
        SqlUsageLedger(self.SessionLocal, store_raw=True).log_usage(_record())
        self.assertEqual(self._rows()[0].usage_meta["input_raw"], "gastei 50 no mercado")

    def test_failed_attempt_truncates_error(self):
        SqlUsageLedger(self.SessionLocal).log_usage(
            _record(success=False, prompt_tokens=0, completion_tokens=0, error="x" * 5000, metadata={})
        )
        row = self._rows()[0]
        self.assertFalse(row.success)
        self.assertEqual(len(row.error), 1000)
        self.assertIsNone(row.usage_meta)

    def test_summary_groups_by_operation_and_provider(self):
        ledger = SqlUsageLedger(self.SessionLocal)
        ledger.log_usage(_record())
        ledger.log_usage(_record(provider="groq", model="mock", operation="transcribe-audio"))
        ledger.log_usage(_record(provider="groq", model="mock", cache_hit=True))
        ledger.log_usage(_record(tenant_id="other"))

        db = self.SessionLocal()
        try:
            db.add(
                AIUsageLog(
                    tenant_id="t1",
                    provider="openai",
                    operation="extract-text",
                    estimated_cost_usd=Decimal("9"),
                    created_at=datetime.now(timezone.utc) - timedelta(days=60),
                )
            )
            db.commit()
            summary = usage_summary(db, "t1", days=30)
        finally:
            db.close()

        self.assertEqual(summary["total_calls"], 3)
        self.assertEqual(summary["total_tokens"], 6_000_000)
        self.assertAlmostEqual(summary["total_cost_usd"], 0.75)
        self.assertEqual(summary["by_operation"]["extract-text"]["calls"], 2)
        self.assertEqual(summary["by_operation"]["transcribe-audio"]["calls"], 1)
        self.assertEqual(summary["by_provider"]["groq"], {"calls": 2, "cost_usd": 0.0})

    def test_summary_for_unknown_tenant_is_empty(self):
        db = self.SessionLocal()
        try:
            summary = usage_summary(db, "nobody")
        finally:
            db.close()
        self.assertEqual(summary["total_calls"], 0)
        self.assertEqual(summary["by_provider"], {})
