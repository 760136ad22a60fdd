"""Cheap rule-based extraction used when retrieval already resolved the category."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from gastozap.services.ai.finance_extract.contracts import ExtractionResult, TransactionType, parse_amount
from gastozap.services.rule_extract.temporal import NAMED_DATE_PATTERNS, resolve_date
from gastozap.utils.text import fold

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.85

EXPENSE_KEYWORDS = (
    "gastei", "paguei", "comprei", "gasto", "pago", "compra", "despesa", "debito",
    "saiu", "saque", "conta", "boleto", "parcela", "prestacao", "mensalidade",
    "spent", "paid", "bought", "purchase", "expense", "bill", "debit", "withdrawal",
)
INCOME_KEYWORDS = (
    "recebi", "recebido", "recebimento", "receita", "ganhei", "ganho", "salario",
    "rendimento", "pagamento", "entrou", "deposito", "entrada", "renda",
    "received", "earned", "salary", "income", "deposit", "refund", "paycheck",
)

_CURRENCY = r"(?:r\$|us\$|\$|€|£)"
_GROUPED = r"\d{1,3}(?:[.,]\d{3})+"
_AMOUNT_PATTERNS = (
    re.compile(rf"{_CURRENCY}\s*((?:{_GROUPED}|\d+)[.,]\d{{2}})(?!\d)"),
    re.compile(rf"(?<![\d/])((?:{_GROUPED}|\d+)[.,]\d{{2}})(?![\d/])"),
    re.compile(rf"{_CURRENCY}\s*({_GROUPED}|\d+)(?![\d/])"),
    re.compile(r"(?<![\d/.,])(\d+)(?![\d/.,])"),
)
# Numbers that belong to a date, not to the amount.
_DATE_FRAGMENTS = re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b|\b(?:dia|day|on the)\s+\d{1,2}(?:st|nd|rd|th)?\b")

_FILLER_WORDS = {
    "gastei", "comprei", "paguei", "recebi", "ganhei", "spent", "paid", "bought", "received", "earned",
    "no", "na", "nos", "nas", "em", "de", "do", "da", "dos", "das", "com", "um", "uma", "o", "a",
    "at", "on", "in", "the", "for", "of", "a", "an", "with",
    "reais", "real", "rs", "dollars", "dolares", "bucks",
}
_DESCRIPTION_MIN = 5
_DESCRIPTION_MAX = 100


def detect_transaction_type(text: str) -> Optional[TransactionType]:
    """Keyword-based type guess; ``None`` when nothing decisive is said."""
    words = set(re.findall(r"[a-z]+", fold(text)))
    for keyword in EXPENSE_KEYWORDS:
        if keyword in words:
            logger.debug("Detected EXPENSE via %r", keyword)
            return TransactionType.EXPENSE
    for keyword in INCOME_KEYWORDS:
        if keyword in words:
            logger.debug("Detected INCOME via %r", keyword)
            return TransactionType.INCOME
    return None


def extract_amount(text: str) -> Optional[Decimal]:
    scrubbed = _DATE_FRAGMENTS.sub(" ", fold(text))
    for pattern in NAMED_DATE_PATTERNS:
        scrubbed = pattern.sub(" ", scrubbed)
    for pattern in _AMOUNT_PATTERNS:
        match = pattern.search(scrubbed)
        if match:
            return parse_amount(match.group(1))
    return None


def clean_description(text: str) -> str:
    stripped = _DATE_FRAGMENTS.sub(" ", text)
    stripped = re.sub(rf"(?i){_CURRENCY}?\s*\d[\d.,]*", " ", stripped)
    words = [w for w in stripped.split() if fold(w).strip(".,!?;:") not in _FILLER_WORDS]
    description = " ".join(words).strip(" .,;:-")
    if len(description) < _DESCRIPTION_MIN:
        return ""
    return description[:_DESCRIPTION_MAX]


def extract_basic(text: str, *, now: Optional[datetime] = None) -> ExtractionResult:
    """Amount, type, date and description without calling any provider.

    Category fields are left at their defaults for the caller to fill from
    the retrieval match.
    """
    amount = extract_amount(text)
    return ExtractionResult(
        type=detect_transaction_type(text) or TransactionType.EXPENSE,
        amount=amount if amount is not None else Decimal("0"),
        description=clean_description(text),
        date=resolve_date(text, now=now),
        confidence=RULE_CONFIDENCE,
    )
