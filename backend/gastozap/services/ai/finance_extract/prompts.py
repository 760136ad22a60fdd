"""Prompt templates for transaction extraction, receipt images and category suggestion."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

TRANSACTION_SYSTEM_PROMPT = """You extract structured financial transactions from short chat messages
(usually Brazilian Portuguese, sometimes English). Today is {today}.

Return ONLY a JSON object with these fields:
- type: "EXPENSE" or "INCOME"
- amount: positive number with "." as decimal separator (150,50 -> 150.50; 1.500,00 -> 1500.00)
- category: one of the user's category names when a list is given
- subCategory: one of that category's subcategory names, or null
- description: the specific item or service only, without amounts, currency or the category name; null if nothing specific
- merchant: store or counterparty name if mentioned, else null
- date: ISO 8601; resolve relative words ("ontem"/"yesterday" = today - 1 day, "anteontem" = today - 2 days)
- confidence: number between 0 and 1

No markdown, no explanation."""

TRANSACTION_USER_PROMPT = """Extract the transaction from this message: "{text}"
{catalog}"""

IMAGE_ANALYSIS_PROMPT = """This image is a receipt, invoice, bank slip or payment screenshot.
Today is {today}. Extract the transaction it documents and return ONLY a JSON object with:
type ("EXPENSE" or "INCOME"), amount (number, "." decimal separator, the TOTAL paid),
category, subCategory, description, merchant, date (ISO 8601, the document date) and
confidence (0 to 1).
{catalog}"""

CATEGORY_SUGGESTION_SYSTEM_PROMPT = """You pick the best category for a financial transaction.
Answer with the category name only, exactly as written in the list. If nothing fits, answer "Other"."""

CATEGORY_SUGGESTION_USER_PROMPT = """Transaction description: "{description}"

Available categories:
{categories}"""

_MAX_TEXT = 2000


def _today(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).date().isoformat()


def format_catalog(catalog: Iterable) -> str:
    """Render ``CategoryEntry`` items as ``- Category (subcategories: a, b)`` lines."""
    grouped: dict[str, list[str]] = {}
    for entry in catalog:
        subs = grouped.setdefault(entry.category_name, [])
        if entry.sub_category_name and entry.sub_category_name not in subs:
            subs.append(entry.sub_category_name)
    if not grouped:
        return ""
    lines = ["", "User categories (use these names exactly):"]
    for name, subs in grouped.items():
        lines.append(f"- {name} (subcategories: {', '.join(subs)})" if subs else f"- {name}")
    return "\n".join(lines)


def transaction_prompt(text: str, catalog: Iterable = (), *, now: Optional[datetime] = None) -> tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for text extraction."""
    system = TRANSACTION_SYSTEM_PROMPT.format(today=_today(now))
    user = TRANSACTION_USER_PROMPT.format(text=text[:_MAX_TEXT].replace('"', "'"), catalog=format_catalog(catalog))
    return system, user.strip()


def image_prompt(catalog: Iterable = (), *, now: Optional[datetime] = None) -> str:
    return IMAGE_ANALYSIS_PROMPT.format(today=_today(now), catalog=format_catalog(catalog)).strip()


def category_prompt(description: str, categories: Sequence[str]) -> tuple[str, str]:
    listed = "\n".join(f"- {name}" for name in categories) or "- (none, suggest a short category name)"
    user = CATEGORY_SUGGESTION_USER_PROMPT.format(description=description[:_MAX_TEXT], categories=listed)
    return CATEGORY_SUGGESTION_SYSTEM_PROMPT, user
