"""Pipeline states, call context, outcomes and the collaborator interfaces."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from gastozap.services.ai.finance_extract.contracts import ExtractionResult
from gastozap.services.rag.index import CategoryEntry, LearnedSynonym, RetrievalMatch


class PipelineState(str, Enum):
    START = "START"
    FAST_MATCH = "FAST_MATCH"
    DONE = "DONE"
    AI_EXTRACT = "AI_EXTRACT"
    REVALIDATE = "REVALIDATE"
    VALIDATED = "VALIDATED"
    AUTO_REGISTER = "AUTO_REGISTER"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    REJECTED = "REJECTED"


class OutcomeSource(str, Enum):
    RAG_DIRECT = "RAG_DIRECT"
    AI_RAG_VALIDATED = "AI_RAG_VALIDATED"
    AI_ONLY = "AI_ONLY"
    MANUAL = "MANUAL"


class TransactionRecord(ExtractionResult):
    """``ExtractionResult`` plus the tenant identifiers it resolved to."""

    account_id: str = ""
    category_id: Optional[str] = None
    sub_category_id: Optional[str] = None

    @classmethod
    def from_extraction(cls, result: ExtractionResult, **extra) -> "TransactionRecord":
        return cls(**{**result.model_dump(), **extra})

    @property
    def fully_resolved(self) -> bool:
        return bool(self.category_id and self.sub_category_id)


@dataclass
class PipelineContext:
    """Per-message call context.

    ``extraction_done`` flips to True the first time the message goes through
    FAST_MATCH / AI_EXTRACT; a context carrying it cannot extract again.
    """

    tenant_id: str
    account_id: str = ""
    catalog: Optional[Sequence[CategoryEntry]] = None
    rag_enabled: Optional[bool] = None
    extraction_done: bool = False
    message_id: Optional[str] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class SinkResult:
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PendingConfirmation:
    id: str
    tenant_id: str
    account_id: str
    record: TransactionRecord
    created_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class PipelineOutcome:
    state: PipelineState
    message: str
    record: Optional[TransactionRecord] = None
    source: Optional[OutcomeSource] = None
    match: Optional[RetrievalMatch] = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    provider_calls: int = 0
    confirmation: Optional[PendingConfirmation] = None
    transaction_id: Optional[str] = None
    transcript: Optional[str] = None
    trail: tuple[PipelineState, ...] = field(default_factory=tuple)
    learned: Optional[LearnedSynonym] = None

    @property
    def rejected(self) -> bool:
        return self.state == PipelineState.REJECTED


class TransactionSink(abc.ABC):
    """Outbound finance ledger that persists auto-registered transactions."""

    @abc.abstractmethod
    async def create_transaction(self, record: TransactionRecord) -> SinkResult:
        ...


class CategorySource(abc.ABC):
    """Supplies a tenant's categories when the caller does not pass them."""

    @abc.abstractmethod
    async def get_categories(self, tenant_id: str, account_id: str) -> list[CategoryEntry]:
        ...
