"""Common AI layer: json_tools, category matching, provider registry, settings."""

import os
import unittest
from decimal import Decimal
from unittest.mock import patch

from gastozap.core.config import Settings
from gastozap.core.runtime import AIRuntimeConfig, OperationKind
from gastozap.services.ai.common.ledger import estimate_cost, hash_input
from gastozap.services.ai.common.orchestrator import match_category


class JsonToolsTests(unittest.TestCase):
    def test_plain_object(self):
        from gastozap.services.ai.common.json_tools import extract_json

        self.assertEqual(extract_json('{"amount": 10}'), {"amount": 10})

    def test_markdown_fence(self):
        from gastozap.services.ai.common.json_tools import extract_json

        text = 'Sure!\n```json\n{"type": "EXPENSE", "amount": 12.5}\n```\nAnything else?'
        self.assertEqual(extract_json(text), {"type": "EXPENSE", "amount": 12.5})

    def test_object_surrounded_by_prose(self):
        from gastozap.services.ai.common.json_tools import extract_json

        result = extract_json('Here it is: {"a": {"b": [1, 2]}, "c": "}"} hope it helps')
        self.assertEqual(result, {"a": {"b": [1, 2]}, "c": "}"})

    def test_no_json(self):
        from gastozap.services.ai.common.json_tools import extract_json

        self.assertIsNone(extract_json(""))
        self.assertIsNone(extract_json("no json here"))
        self.assertIsNone(extract_json("{broken: json"))

    def test_object_helper_takes_first_dict_of_a_list(self):
        from gastozap.services.ai.common.json_tools import extract_json_object

        self.assertEqual(extract_json_object('[{"amount": 1}, {"amount": 2}]'), {"amount": 1})
        self.assertIsNone(extract_json_object("[1, 2, 3]"))


class MatchCategoryTests(unittest.TestCase):
    CATEGORIES = ["Alimentação", "Transporte", "Saúde"]

    def test_exact_match_ignores_case_and_accents(self):
        self.assertEqual(match_category("alimentacao", self.CATEGORIES), "Alimentação")
        self.assertEqual(match_category('"SAUDE".', self.CATEGORIES), "Saúde")

    def test_contained_name(self):
        self.assertEqual(match_category("Category: Transporte", self.CATEGORIES), "Transporte")

    def test_unknown_answer_is_other(self):
        self.assertEqual(match_category("Entertainment", self.CATEGORIES), "Other")
        self.assertEqual(match_category("", self.CATEGORIES), "Other")

    def test_without_list_returns_cleaned_answer(self):
        self.assertEqual(match_category("  Groceries\nbecause...", []), "Groceries")


class LedgerCostTests(unittest.TestCase):
    def test_known_model(self):
        self.assertEqual(estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000), Decimal("0.75"))

    def test_dated_variant_uses_longest_prefix(self):
        self.assertEqual(
            estimate_cost("gpt-4o-mini-2024-07-18", 1_000_000, 0),
            estimate_cost("gpt-4o-mini", 1_000_000, 0),
        )

    def test_unknown_model_uses_default_rates(self):
        self.assertEqual(estimate_cost("mystery", 1_000_000, 1_000_000), Decimal("3.0"))

    def test_hash_input(self):
        self.assertIsNone(hash_input(None))
        self.assertEqual(len(hash_input("gastei 10")), 64)
        self.assertEqual(hash_input(b"abc"), hash_input("abc"))


class ProviderRegistryTests(unittest.TestCase):
    @patch.dict(os.environ, {"AI_ALLOWED_PROVIDERS": "mock"}, clear=False)
    def test_mock_only(self):
        from gastozap.services.ai.common.providers import build_registry

        registry = build_registry(Settings())
        self.assertEqual(registry.names(), ["mock"])
        self.assertIn("mock", registry)

    @patch.dict(
        os.environ,
        {"AI_ALLOWED_PROVIDERS": "openai,groq,claude", "OPENAI_API_KEY": "sk-test", "GROQ_API_KEY": "", "ANTHROPIC_API_KEY": ""},
        clear=False,
    )
    def test_providers_without_keys_are_skipped(self):
        from gastozap.services.ai.common.providers import build_registry

        registry = build_registry(Settings())
        self.assertEqual(registry.names(), ["openai"])

    @patch.dict(
        os.environ,
        {
            "AI_ALLOWED_PROVIDERS": '["openai", "gemini", "groq", "deepseek", "claude"]',
            "OPENAI_API_KEY": "k",
            "GOOGLE_GEMINI_API_KEY": "k",
            "GROQ_API_KEY": "k",
            "DEEPSEEK_API_KEY": "k",
            "ANTHROPIC_API_KEY": "k",
        },
        clear=False,
    )
    def test_capabilities_per_provider(self):
        from gastozap.services.ai.common.providers import build_registry

        registry = build_registry(Settings())
        self.assertEqual(len(registry), 5)
        self.assertEqual(registry.supporting(OperationKind.TRANSCRIBE_AUDIO), ["groq", "openai"])
        self.assertEqual(registry.supporting(OperationKind.ANALYZE_IMAGE), ["claude", "gemini", "openai"])
        self.assertEqual(len(registry.supporting(OperationKind.EXTRACT_TEXT)), 5)


class SettingsTests(unittest.TestCase):
    @patch.dict(
        os.environ,
        {
            "AI_FALLBACK_TEXT_CHAIN": "Groq, OpenAI",
            "AI_TEXT_PROVIDER": " DeepSeek ",
            "GROQ_RATE_LIMIT_RPM": "7",
            "CONFIRMATION_TIMEOUT_SECONDS": "120",
        },
        clear=False,
    )
    def test_env_parsing(self):
        settings = Settings()
        self.assertEqual(settings.ai_fallback_text_chain, ["groq", "openai"])
        self.assertEqual(settings.ai_text_provider, "deepseek")
        self.assertEqual(settings.rate_limit_for("groq"), (7, 15000))
        self.assertEqual(settings.rate_limit_for("unknown"), (0, 0))
        self.assertEqual(settings.confirmation_ttl_seconds, 120)

    @patch.dict(os.environ, {"AI_FALLBACK_ENABLED": "true", "RAG_FAST_PATH_THRESHOLD": "0.75"}, clear=False)
    def test_runtime_snapshot_from_settings(self):
        config = AIRuntimeConfig.from_settings(Settings())
        self.assertTrue(config.fallback_enabled)
        self.assertEqual(config.thresholds.fast_path, 0.75)
        self.assertEqual(config.active_provider(OperationKind.TRANSCRIBE_AUDIO), "groq")
        self.assertEqual(config.chain_for(OperationKind.ANALYZE_IMAGE), ["gemini", "openai"])
        self.assertEqual(config.limit_for("mock").rpm, 0)
        self.assertEqual(config.limit_for("openai").tpm, 90000)
