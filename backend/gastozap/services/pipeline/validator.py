from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from gastozap.services.ai.finance_extract.contracts import ExtractionResult, TransactionType

MAX_REASONABLE_AMOUNT = Decimal("1000000")


@dataclass(frozen=True)
class ValidationReport:
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_record(
    record: ExtractionResult,
    *,
    min_confidence: float,
    now: Optional[datetime] = None,
) -> ValidationReport:
    now = now or datetime.now(timezone.utc)
    errors: list[str] = []
    warnings: list[str] = []

    if record.amount is None or record.amount <= 0:
        errors.append("I couldn't find a valid amount. Please send the value, e.g. 'spent 25.90 on lunch'.")
    elif record.amount > MAX_REASONABLE_AMOUNT:
        warnings.append(f"The amount {record.amount} is unusually high, please double-check it.")

    if record.type not in (TransactionType.EXPENSE, TransactionType.INCOME):
        errors.append("I couldn't tell whether this is an expense or an income.")

    if not isinstance(record.date, datetime):
        errors.append("I couldn't understand the date of this transaction.")
    else:
        if record.date < now - timedelta(days=365):
            warnings.append("The date is more than one year ago.")
        elif record.date > now + relativedelta(months=1):
            warnings.append("The date is more than one month in the future.")

    if record.confidence < min_confidence:
        errors.append(
            "I'm not confident I understood this transaction. "
            "Could you rephrase it with the amount and what it was for?"
        )

    return ValidationReport(tuple(errors), tuple(warnings))
