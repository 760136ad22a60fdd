"""Natural-language date references in Portuguese and English."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta

from gastozap.utils.text import fold

logger = logging.getLogger(__name__)


class TimeReference(str, Enum):
    TODAY = "TODAY"
    YESTERDAY = "YESTERDAY"
    DAY_BEFORE_YESTERDAY = "DAY_BEFORE_YESTERDAY"
    TOMORROW = "TOMORROW"
    LAST_WEEK = "LAST_WEEK"
    THIS_WEEK = "THIS_WEEK"
    NEXT_WEEK = "NEXT_WEEK"
    LAST_MONTH = "LAST_MONTH"
    THIS_MONTH = "THIS_MONTH"
    NEXT_MONTH = "NEXT_MONTH"
    BEGINNING_OF_WEEK = "BEGINNING_OF_WEEK"
    END_OF_WEEK = "END_OF_WEEK"
    BEGINNING_OF_MONTH = "BEGINNING_OF_MONTH"
    END_OF_MONTH = "END_OF_MONTH"


# Order matters: longer phrases that contain shorter ones come first.
_PATTERNS: list[tuple[re.Pattern, TimeReference, float]] = [
    (re.compile(r"\b(anteontem|antes de ontem|day before yesterday)\b"), TimeReference.DAY_BEFORE_YESTERDAY, 1.0),
    (re.compile(r"\b(ontem|yesterday)\b"), TimeReference.YESTERDAY, 1.0),
    (re.compile(r"\b(hoje|today)\b"), TimeReference.TODAY, 1.0),
    (re.compile(r"\b(amanha|tomorrow)\b"), TimeReference.TOMORROW, 1.0),
    (
        re.compile(r"\b(inicio da semana|comeco da semana|beginning of the week|start of the week)\b"),
        TimeReference.BEGINNING_OF_WEEK,
        0.85,
    ),
    (
        re.compile(r"\b(fim da semana|final da semana|fim de semana|end of the week|weekend)\b"),
        TimeReference.END_OF_WEEK,
        0.85,
    ),
    (
        re.compile(r"\b(inicio do mes|comeco do mes|beginning of the month|start of the month)\b"),
        TimeReference.BEGINNING_OF_MONTH,
        0.85,
    ),
    (
        re.compile(r"\b(fim do mes|final do mes|end of the month)\b"),
        TimeReference.END_OF_MONTH,
        0.85,
    ),
    (
        re.compile(r"\b(semana passada|semana que passou|ultima semana|last week)\b"),
        TimeReference.LAST_WEEK,
        0.9,
    ),
    (
        re.compile(r"\b(esta semana|essa semana|nesta semana|nessa semana|this week)\b"),
        TimeReference.THIS_WEEK,
        0.9,
    ),
    (
        re.compile(r"\b(proxima semana|semana que vem|semana seguinte|next week)\b"),
        TimeReference.NEXT_WEEK,
        0.9,
    ),
    (re.compile(r"\b(mes passado|ultimo mes|last month)\b"), TimeReference.LAST_MONTH, 0.9),
    (
        re.compile(r"\b(este mes|esse mes|neste mes|nesse mes|this month)\b"),
        TimeReference.THIS_MONTH,
        0.9,
    ),
    (
        re.compile(r"\b(proximo mes|mes que vem|mes seguinte|next month)\b"),
        TimeReference.NEXT_MONTH,
        0.9,
    ),
]

_MONTHS = {
    "janeiro": 1, "fevereiro": 2, "marco": 3, "abril": 4, "maio": 5, "junho": 6,
    "julho": 7, "agosto": 8, "setembro": 9, "outubro": 10, "novembro": 11, "dezembro": 12,
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_EXPLICIT_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?\b")
_DAY = r"(?:3[01]|[12]\d|0?[1-9])"
_DAY_OF_MONTH_NAME_RE = re.compile(rf"\b({_DAY})\s+(?:de\s+|of\s+)?({_MONTH_ALT})\b")
_MONTH_NAME_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\s+({_DAY})(?:st|nd|rd|th)?\b")
# Day-and-month-name phrases ("15 de marco", "march 15th") over folded text.
NAMED_DATE_PATTERNS = (_DAY_OF_MONTH_NAME_RE, _MONTH_NAME_DAY_RE)
_SPECIFIC_DAY_RES = (
    re.compile(r"\b(?:no\s+)?dia\s+(\d{1,2})\b"),
    re.compile(r"\bday\s+(\d{1,2})\b"),
    re.compile(r"\bon\s+the\s+(\d{1,2})(?:st|nd|rd|th)?\b"),
)


@dataclass(frozen=True)
class TemporalAnalysis:
    reference: Optional[TimeReference]
    specific_day: Optional[int]
    explicit_date: Optional[datetime]
    confidence: float


def _safe_date(base: datetime, year: int, month: int, day: int) -> Optional[datetime]:
    try:
        return base.replace(year=year, month=month, day=day)
    except ValueError:
        return None


def analyze(text: str, *, now: Optional[datetime] = None) -> TemporalAnalysis:
    base = now or datetime.now(timezone.utc)
    normalized = fold(text)

    reference = None
    confidence = 0.0
    for pattern, ref, ref_confidence in _PATTERNS:
        if pattern.search(normalized):
            reference, confidence = ref, ref_confidence
            break

    explicit = None
    match = _EXPLICIT_DATE_RE.search(normalized)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        year = base.year
        if match.group(3):
            year = int(match.group(3))
            if year < 100:
                year += 2000
        explicit = _safe_date(base, year, month, day)
    if explicit is None:
        match = _DAY_OF_MONTH_NAME_RE.search(normalized)
        if match:
            explicit = _safe_date(base, base.year, _MONTHS[match.group(2)], int(match.group(1)))
    if explicit is None:
        match = _MONTH_NAME_DAY_RE.search(normalized)
        if match:
            explicit = _safe_date(base, base.year, _MONTHS[match.group(1)], int(match.group(2)))

    specific_day = None
    for pattern in _SPECIFIC_DAY_RES:
        match = pattern.search(normalized)
        if match and 1 <= int(match.group(1)) <= 31:
            specific_day = int(match.group(1))
            break

    if explicit is not None:
        confidence = 1.0
    elif specific_day is not None:
        confidence = max(confidence, 0.95)

    return TemporalAnalysis(reference, specific_day, explicit, confidence)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def _apply_reference(base: datetime, reference: TimeReference) -> datetime:
    if reference == TimeReference.YESTERDAY:
        return base - timedelta(days=1)
    if reference == TimeReference.DAY_BEFORE_YESTERDAY:
        return base - timedelta(days=2)
    if reference == TimeReference.TOMORROW:
        return base + timedelta(days=1)
    if reference == TimeReference.LAST_WEEK:
        return base - timedelta(weeks=1)
    if reference == TimeReference.NEXT_WEEK:
        return base + timedelta(weeks=1)
    if reference == TimeReference.LAST_MONTH:
        return base - relativedelta(months=1)
    if reference == TimeReference.NEXT_MONTH:
        return base + relativedelta(months=1)
    # Weeks start on Sunday.
    days_since_sunday = (base.weekday() + 1) % 7
    if reference == TimeReference.BEGINNING_OF_WEEK:
        return _start_of_day(base - timedelta(days=days_since_sunday))
    if reference == TimeReference.END_OF_WEEK:
        return _end_of_day(base + timedelta(days=6 - days_since_sunday))
    if reference == TimeReference.BEGINNING_OF_MONTH:
        return _start_of_day(base.replace(day=1))
    if reference == TimeReference.END_OF_MONTH:
        return _end_of_day(base + relativedelta(day=31))
    return base


def resolve_date(text: str, *, now: Optional[datetime] = None) -> datetime:
    """Date the user most likely meant in *text*; *now* when nothing is said."""
    base = now or datetime.now(timezone.utc)
    analysis = analyze(text, now=base)

    if analysis.explicit_date is not None:
        return analysis.explicit_date

    result = base
    if analysis.reference is not None:
        result = _apply_reference(base, analysis.reference)

    if analysis.specific_day is not None:
        if analysis.reference in (None, TimeReference.LAST_MONTH, TimeReference.THIS_MONTH, TimeReference.NEXT_MONTH):
            with_day = result + relativedelta(day=analysis.specific_day)
            # A bare "day 20" mentioned on the 5th refers to last month.
            if analysis.reference is None and with_day > base:
                with_day = base - relativedelta(months=1) + relativedelta(day=analysis.specific_day)
            result = with_day

    logger.debug("Resolved date %s (ref=%s, day=%s)", result.isoformat(), analysis.reference, analysis.specific_day)
    return result
