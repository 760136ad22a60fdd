"""Per-tenant lexical retrieval over category / subcategory names.

Scoring, per entry (the entry's names are the "document"):

* BM25 over the union of category and subcategory tokens (k1=1.2, b=0.75,
  idf=1, avgdl = tenant average);
* a bonus when a query token hits the subcategory name directly;
* synonym hits from the shared ``SynonymTable``, subcategory hits at 0.8x;
* learned tenant keywords weighted by their confidence;
* ``raw / (raw + 1)`` maps the sum into [0, 1);
* an exact normalized name match is lifted to at least ``EXACT_MATCH_SCORE``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable, Mapping, Optional

from gastozap.services.ai.finance_extract.contracts import TransactionType, parse_transaction_type
from gastozap.services.rag.synonyms import SynonymTable
from gastozap.services.rag.tokens import tokenize
from gastozap.utils.text import fold

logger = logging.getLogger(__name__)

BM25_K1 = 1.2
BM25_B = 0.75
BM25_IDF = 1.0
SUBCATEGORY_TERM_BONUS = 1.0
SYNONYM_WEIGHT = 1.5
SUBCATEGORY_SYNONYM_FACTOR = 0.8
LEARNED_WEIGHT = 3.0
EXACT_MATCH_SCORE = 0.95

_PHRASE_RE = re.compile(r"[^\W_]+")


def _phrase(text: str | None) -> str:
    return " ".join(_PHRASE_RE.findall(fold(text)))


@dataclass(frozen=True)
class CategoryEntry:
    category_id: str
    category_name: str
    account_id: str = ""
    sub_category_id: Optional[str] = None
    sub_category_name: Optional[str] = None
    transaction_type: Optional[TransactionType] = None


@dataclass(frozen=True)
class RetrievalMatch:
    category_id: str
    category_name: str
    score: float
    sub_category_id: Optional[str] = None
    sub_category_name: Optional[str] = None
    matched_terms: tuple[str, ...] = ()


@dataclass(frozen=True)
class LearnedSynonym:
    keyword: str
    tokens: tuple[str, ...]
    category_id: str
    category_name: str
    sub_category_id: Optional[str] = None
    sub_category_name: Optional[str] = None
    confidence: float = 1.0
    usage_count: int = 1
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class _Document:
    entry: CategoryEntry
    category_tokens: frozenset[str]
    sub_tokens: frozenset[str]
    tokens: tuple[str, ...]
    exact_forms: frozenset[str]


@dataclass(frozen=True)
class _TenantSnapshot:
    documents: tuple[_Document, ...]
    avgdl: float
    indexed_at: datetime


def expand_categories(
    categories: Iterable[Mapping[str, Any]],
    *,
    account_id: str = "",
) -> list[CategoryEntry]:
    """Flatten a nested catalog into one entry per category x subcategory.

    Accepts ``{"id", "name", "type", "subCategories": [{"id", "name"}]}``
    (``sub_categories`` / ``subcategories`` also work). A category without
    subcategories yields a single entry.
    """
    entries: list[CategoryEntry] = []
    for category in categories:
        category_id = str(category.get("id") or category.get("category_id") or "")
        name = str(category.get("name") or category.get("category_name") or "").strip()
        if not category_id or not name:
            continue
        raw_type = category.get("type") or category.get("transaction_type")
        tx_type = parse_transaction_type(raw_type) if raw_type else None
        subs = (
            category.get("subCategories")
            or category.get("sub_categories")
            or category.get("subcategories")
            or []
        )
        base = CategoryEntry(
            category_id=category_id,
            category_name=name,
            account_id=str(category.get("account_id") or category.get("accountId") or account_id),
            transaction_type=tx_type,
        )
        if not subs:
            entries.append(base)
            continue
        for sub in subs:
            sub_id = str(sub.get("id") or "")
            sub_name = str(sub.get("name") or "").strip()
            if not sub_id or not sub_name:
                continue
            entries.append(replace(base, sub_category_id=sub_id, sub_category_name=sub_name))
    return entries


def _document(entry: CategoryEntry) -> _Document:
    category_tokens = tokenize(entry.category_name)
    sub_tokens = tokenize(entry.sub_category_name)
    exact = {_phrase(entry.category_name)}
    if entry.sub_category_name:
        exact.add(_phrase(entry.sub_category_name))
        exact.add(_phrase(f"{entry.category_name} {entry.sub_category_name}"))
    exact.discard("")
    return _Document(
        entry=entry,
        category_tokens=frozenset(category_tokens),
        sub_tokens=frozenset(sub_tokens),
        tokens=tuple(category_tokens + sub_tokens),
        exact_forms=frozenset(exact),
    )


class CategoryIndex:
    def __init__(self, synonyms: Optional[SynonymTable] = None) -> None:
        self._synonyms = synonyms or SynonymTable.bundled()
        self._tenants: dict[str, _TenantSnapshot] = {}
        self._learned: dict[str, tuple[LearnedSynonym, ...]] = {}
        self._lock = Lock()

    @property
    def synonyms(self) -> SynonymTable:
        return self._synonyms

    def reload_synonyms(self, table: SynonymTable) -> str:
        previous = self._synonyms.version
        self._synonyms = table
        logger.info("Synonym table replaced: %s -> %s", previous, table.version)
        return table.version

    # --- indexing ---

    def index(self, tenant_id: str, entries: Iterable[CategoryEntry]) -> int:
        documents = tuple(_document(entry) for entry in entries)
        lengths = [len(doc.tokens) for doc in documents]
        avgdl = (sum(lengths) / len(lengths)) if lengths else 1.0
        snapshot = _TenantSnapshot(
            documents=documents,
            avgdl=max(avgdl, 1.0),
            indexed_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._tenants[tenant_id] = snapshot
        logger.debug("Indexed %d category entries for tenant %s", len(documents), tenant_id)
        return len(documents)

    def entries(self, tenant_id: str) -> tuple[CategoryEntry, ...]:
        snapshot = self._tenants.get(tenant_id)
        if snapshot is None:
            return ()
        return tuple(doc.entry for doc in snapshot.documents)

    def is_indexed(self, tenant_id: str) -> bool:
        return tenant_id in self._tenants

    def purge(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is None:
                removed = len(self._tenants)
                self._tenants = {}
                self._learned = {}
                return removed
            self._learned.pop(tenant_id, None)
            return 1 if self._tenants.pop(tenant_id, None) is not None else 0

    def stats(self) -> dict[str, Any]:
        tenants = dict(self._tenants)
        return {
            "tenants": len(tenants),
            "entries": sum(len(s.documents) for s in tenants.values()),
            "learned_synonyms": sum(len(v) for v in self._learned.values()),
            "synonyms_version": self._synonyms.version,
        }

    # --- learned synonyms ---

    def learn(
        self,
        tenant_id: str,
        keyword: str,
        *,
        category_id: str,
        category_name: str,
        sub_category_id: Optional[str] = None,
        sub_category_name: Optional[str] = None,
        confidence: float = 1.0,
    ) -> LearnedSynonym:
        tokens = tuple(tokenize(keyword))
        if not tokens:
            raise ValueError(f"keyword {keyword!r} has no searchable terms")
        normalized = " ".join(tokens)
        confidence = max(0.0, min(1.0, float(confidence)))
        with self._lock:
            current = list(self._learned.get(tenant_id, ()))
            usage = 1
            for i, existing in enumerate(current):
                if existing.keyword == normalized:
                    usage = existing.usage_count + 1
                    del current[i]
                    break
            learned = LearnedSynonym(
                keyword=normalized,
                tokens=tokens,
                category_id=category_id,
                category_name=category_name,
                sub_category_id=sub_category_id,
                sub_category_name=sub_category_name,
                confidence=confidence,
                usage_count=usage,
            )
            current.append(learned)
            self._learned[tenant_id] = tuple(current)
        logger.info(
            "Learned %r -> %s/%s for tenant %s",
            normalized,
            category_name,
            sub_category_name,
            tenant_id,
        )
        return learned

    def forget(self, tenant_id: str, keyword: str) -> bool:
        normalized = " ".join(tokenize(keyword))
        with self._lock:
            current = self._learned.get(tenant_id, ())
            kept = tuple(s for s in current if s.keyword != normalized)
            if len(kept) == len(current):
                return False
            self._learned[tenant_id] = kept
        return True

    def learned(self, tenant_id: str) -> list[LearnedSynonym]:
        return list(self._learned.get(tenant_id, ()))

    # --- querying ---

    def query(
        self,
        tenant_id: str,
        text: str,
        *,
        min_score: float = 0.0,
        max_results: int = 5,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[RetrievalMatch]:
        snapshot = self._tenants.get(tenant_id)
        if snapshot is None or not snapshot.documents or max_results <= 0:
            return []

        query_tokens = list(dict.fromkeys(tokenize(text)))
        query_phrase = _phrase(text)
        learned = self._learned.get(tenant_id, ())
        synonyms = self._synonyms

        matches: list[RetrievalMatch] = []
        for doc in snapshot.documents:
            entry_type = doc.entry.transaction_type
            if transaction_type is not None and entry_type is not None and entry_type != transaction_type:
                continue
            score, terms = self._score(doc, query_tokens, query_phrase, snapshot.avgdl, synonyms, learned)
            if score < min_score:
                continue
            entry = doc.entry
            matches.append(
                RetrievalMatch(
                    category_id=entry.category_id,
                    category_name=entry.category_name,
                    sub_category_id=entry.sub_category_id,
                    sub_category_name=entry.sub_category_name,
                    score=score,
                    matched_terms=terms,
                )
            )

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:max_results]

    @staticmethod
    def _score(
        doc: _Document,
        query_tokens: list[str],
        query_phrase: str,
        avgdl: float,
        synonyms: SynonymTable,
        learned: tuple[LearnedSynonym, ...],
    ) -> tuple[float, tuple[str, ...]]:
        raw = 0.0
        terms: list[str] = []
        doc_len = len(doc.tokens)

        direct: set[str] = set()
        for token in query_tokens:
            tf = doc.tokens.count(token)
            if not tf:
                continue
            norm = 1 - BM25_B + BM25_B * (doc_len / avgdl)
            raw += BM25_IDF * (tf * (BM25_K1 + 1)) / (tf + BM25_K1 * norm)
            direct.add(token)
            terms.append(token)

        if direct & doc.sub_tokens:
            raw += SUBCATEGORY_TERM_BONUS

        for token in query_tokens:
            if token in direct:
                continue
            related = synonyms.related(token)
            if not related:
                continue
            hit = related & doc.category_tokens
            if hit:
                raw += SYNONYM_WEIGHT
                terms.append(f"{token}->{min(hit)}")
                continue
            hit = related & doc.sub_tokens
            if hit:
                raw += SYNONYM_WEIGHT * SUBCATEGORY_SYNONYM_FACTOR
                terms.append(f"{token}->{min(hit)}")

        if learned:
            query_set = set(query_tokens)
            best = 0.0
            best_keyword = None
            for synonym in learned:
                if synonym.category_id != doc.entry.category_id:
                    continue
                if synonym.sub_category_id and synonym.sub_category_id != doc.entry.sub_category_id:
                    continue
                if not set(synonym.tokens) <= query_set:
                    continue
                if synonym.confidence > best:
                    best, best_keyword = synonym.confidence, synonym.keyword
            if best_keyword is not None:
                raw += LEARNED_WEIGHT * best
                terms.append(f"learned:{best_keyword}")

        score = raw / (raw + 1) if raw > 0 else 0.0
        if query_phrase and query_phrase in doc.exact_forms:
            score = max(score, EXACT_MATCH_SCORE)
            terms.append("exact")
        return round(score, 4), tuple(terms)
