import unittest
from datetime import datetime, timezone
from decimal import Decimal

from gastozap.services.ai.finance_extract.contracts import (
    ExtractionResult,
    TransactionType,
    parse_amount,
    parse_confidence,
    parse_date,
    parse_transaction_type,
)


class ParseAmountTests(unittest.TestCase):
    def test_localized_formats(self):
        cases = {
            "R$ 1.234,56": Decimal("1234.56"),
            "$1,234.56": Decimal("1234.56"),
            "56,89": Decimal("56.89"),
            "56.89": Decimal("56.89"),
            "1.500": Decimal("1500.00"),
            "1,500": Decimal("1500.00"),
            "0,500": Decimal("0.50"),
            "1.234.567": Decimal("1234567.00"),
            "-45,00": Decimal("45.00"),
            "abc": Decimal("0.00"),
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(parse_amount(raw), expected)

    def test_numbers_are_quantized(self):
        self.assertEqual(parse_amount(10.005), Decimal("10.01"))
        self.assertEqual(parse_amount(7), Decimal("7.00"))
        self.assertEqual(parse_amount(None), Decimal("0.00"))
        self.assertEqual(parse_amount(True), Decimal("0.00"))


class ParseFieldTests(unittest.TestCase):
    def test_transaction_type_vocabulary(self):
        for label in ("INCOME", "receita", "Entradas", "revenue"):
            self.assertEqual(parse_transaction_type(label), TransactionType.INCOME)
        for label in ("EXPENSE", "despesa", "gasto", "saída", "", None, "weird"):
            self.assertEqual(parse_transaction_type(label), TransactionType.EXPENSE)

    def test_confidence_is_clamped(self):
        self.assertEqual(parse_confidence(1.7), 1.0)
        self.assertEqual(parse_confidence(-3), 0.0)
        self.assertEqual(parse_confidence("0,95"), 0.95)
        self.assertEqual(parse_confidence(None), 0.8)
        self.assertEqual(parse_confidence("high"), 0.8)

    def test_dates_become_aware_utc(self):
        now = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
        self.assertEqual(parse_date("2024-03-01", now=now), datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_date("05/02/2024", now=now), datetime(2024, 2, 5, tzinfo=timezone.utc))
        self.assertEqual(parse_date("not a date", now=now), now)
        self.assertEqual(parse_date(None, now=now), now)


class ExtractionResultTests(unittest.TestCase):
    def test_from_raw_accepts_localized_keys(self):
        result = ExtractionResult.from_raw(
            {
                "tipo": "RECEITA",
                "valor": "R$ 2.500,00",
                "categoria": " Salário ",
                "subCategoria": "Mensal",
                "descricao": "salário de março",
                "estabelecimento": "",
                "data": "2024-03-05T10:00:00-03:00",
                "confianca": "0.92",
            }
        )
        self.assertEqual(result.type, TransactionType.INCOME)
        self.assertEqual(result.amount, Decimal("2500.00"))
        self.assertEqual(result.category, "Salário")
        self.assertEqual(result.sub_category, "Mensal")
        self.assertIsNone(result.merchant)
        self.assertEqual(result.date, datetime(2024, 3, 5, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(result.confidence, 0.92)

    def test_defaults_for_missing_fields(self):
        result = ExtractionResult.from_raw({"amount": 12})
        self.assertEqual(result.type, TransactionType.EXPENSE)
        self.assertEqual(result.category, "Other")
        self.assertEqual(result.description, "")
        self.assertEqual(result.confidence, 0.8)

    def test_from_raw_rejects_non_mappings(self):
        with self.assertRaises(ValueError):
            ExtractionResult.from_raw(["amount", 1])

    def test_normalize_is_idempotent(self):
        raw = {
            "type": "despesa",
            "amount": "1.234,5",
            "category": "  Transporte",
            "subcategory": "",
            "date": "10/03/2024",
            "confidence": 3,
        }
        once = ExtractionResult.from_raw(raw).normalize()
        self.assertEqual(once.normalize(), once)
        self.assertEqual(once.normalize().normalize(), once)
        self.assertEqual(once.amount, Decimal("1234.50"))

    def test_payload_round_trips_through_validation(self):
        result = ExtractionResult(type="INCOME", amount="10,00", category="Pix")
        self.assertEqual(ExtractionResult.model_validate(result.to_payload()), result)
