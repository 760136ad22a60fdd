"""Canonical transaction record produced by every extraction route."""

from __future__ import annotations

import logging
import re
from datetime import date as date_type
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Other"
DEFAULT_CONFIDENCE = 0.8
_CENTS = Decimal("0.01")

_INCOME_LABELS = {"INCOME", "INCOMES", "RECEITA", "RECEITAS", "ENTRADA", "ENTRADAS", "REVENUE"}
_EXPENSE_LABELS = {"EXPENSE", "EXPENSES", "DESPESA", "DESPESAS", "GASTO", "GASTOS", "SAIDA", "SAÍDA"}

# Source keys per field, first present wins.
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "type": ("type", "tipo", "transactionType", "transaction_type"),
    "amount": ("amount", "valor", "value", "total"),
    "category": ("category", "categoria"),
    "sub_category": ("subCategory", "sub_category", "subcategory", "subcategoria", "subCategoria"),
    "description": ("description", "descricao", "descrição"),
    "merchant": ("merchant", "estabelecimento", "store", "loja"),
    "date": ("date", "data"),
    "confidence": ("confidence", "confianca", "confiança"),
}


class TransactionType(str, Enum):
    EXPENSE = "EXPENSE"
    INCOME = "INCOME"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_transaction_type(value: Any) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    label = str(value or "").strip().upper()
    if label in _INCOME_LABELS:
        return TransactionType.INCOME
    if label and label not in _EXPENSE_LABELS:
        logger.debug("Unknown transaction type label %r, assuming EXPENSE", value)
    return TransactionType.EXPENSE


def parse_amount(value: Any) -> Decimal:
    """Parse a localized amount into a non-negative Decimal with cents.

    ``"R$ 1.234,56"``, ``"$1,234.56"``, ``"56,89"`` and ``56.89`` all parse.
    Unparseable input yields ``0.00``.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    else:
        number = _parse_amount_string(str(value))
    if not number.is_finite():
        return Decimal("0.00")
    return abs(number).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _parse_amount_string(raw: str) -> Decimal:
    cleaned = re.sub(r"[^\d,.\-]", "", raw)
    if not re.search(r"\d", cleaned):
        return Decimal("0")
    cleaned = cleaned.replace("-", "")

    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")
    if last_comma != -1 and last_dot != -1:
        decimal_sep = "," if last_comma > last_dot else "."
        thousands_sep = "." if decimal_sep == "," else ","
        cleaned = cleaned.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif last_comma != -1 or last_dot != -1:
        sep = "," if last_comma != -1 else "."
        integer_part, _, fraction = cleaned.rpartition(sep)
        # Repeated separators, or exactly three trailing digits, mean grouping.
        if cleaned.count(sep) > 1 or (len(fraction) == 3 and integer_part not in ("", "0")):
            cleaned = cleaned.replace(sep, "")
        else:
            cleaned = cleaned.replace(sep, ".")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


def parse_date(value: Any, *, now: Optional[datetime] = None) -> datetime:
    """Parse *value* into an aware UTC datetime, falling back to *now*."""
    fallback = now or _utcnow()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date_type):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            try:
                parsed = date_parser.parse(text, dayfirst=True)
            except (ValueError, OverflowError, TypeError):
                logger.debug("Unparseable date %r, using now", value)
                return fallback
    else:
        return fallback

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_confidence(value: Any) -> float:
    if value is None or isinstance(value, bool) or value == "":
        return DEFAULT_CONFIDENCE
    try:
        number = float(str(value).strip().rstrip("%").replace(",", "."))
    except ValueError:
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    return round(max(0.0, min(1.0, number)), 4)


def _clean_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ExtractionResult(BaseModel):
    """Normalized transaction proposal.

    Every field is coerced on construction, so ``normalize()`` is a fixed point:
    ``r.normalize().normalize() == r.normalize()``.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: TransactionType = TransactionType.EXPENSE
    amount: Decimal = Decimal("0.00")
    category: str = DEFAULT_CATEGORY
    sub_category: Optional[str] = None
    description: str = ""
    merchant: Optional[str] = None
    date: datetime = Field(default_factory=_utcnow)
    confidence: float = DEFAULT_CONFIDENCE

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value):
        return parse_transaction_type(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value):
        return parse_amount(value)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value):
        return _clean_optional(value) or DEFAULT_CATEGORY

    @field_validator("sub_category", "merchant", mode="before")
    @classmethod
    def _coerce_optional(cls, value):
        return _clean_optional(value)

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value):
        return str(value).strip() if value is not None else ""

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value):
        return parse_date(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        return parse_confidence(value)

    @classmethod
    def from_raw(cls, data: Mapping[str, Any]) -> "ExtractionResult":
        """Build a record from untrusted provider output (any key vocabulary)."""
        if not isinstance(data, Mapping):
            raise ValueError(f"expected a mapping, got {type(data).__name__}")
        values: dict[str, Any] = {}
        for field_name, keys in _FIELD_KEYS.items():
            for key in keys:
                if key in data and data[key] not in (None, ""):
                    values[field_name] = data[key]
                    break
        return cls(**values)

    def normalize(self) -> "ExtractionResult":
        return type(self).model_validate(self.model_dump())

    def to_payload(self) -> dict[str, Any]:
        """JSON-friendly dict used for caching and logging."""
        return self.model_dump(mode="json")
