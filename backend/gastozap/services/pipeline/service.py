"""Extraction pipeline: retrieval first, AI only when retrieval cannot decide.

START -> FAST_MATCH -> DONE (rule extraction, zero AI calls)
START -> FAST_MATCH -> AI_EXTRACT -> REVALIDATE
DONE or REVALIDATE -> VALIDATED -> AUTO_REGISTER or PENDING_CONFIRMATION
any failure -> REJECTED, with a user-facing message
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Sequence

from gastozap.core.errors import (
    PipelineReentry,
    ProviderUnavailable,
    RateLimitExceeded,
    RegistrationFailed,
    ValidationFailed,
)
from gastozap.core.runtime import AIRuntimeConfig, ConfigSource
from gastozap.services.ai.common.orchestrator import OperationContext, ProviderOrchestrator
from gastozap.services.ai.finance_extract.contracts import DEFAULT_CATEGORY, ExtractionResult
from gastozap.services.pipeline.confirmations import ConfirmationStore, MemoryConfirmationStore
from gastozap.services.pipeline.contracts import (
    CategorySource,
    OutcomeSource,
    PipelineContext,
    PipelineOutcome,
    PipelineState,
    TransactionRecord,
    TransactionSink,
)
from gastozap.services.pipeline.validator import validate_record
from gastozap.services.rag.index import CategoryEntry, CategoryIndex, LearnedSynonym, RetrievalMatch
from gastozap.services.rag.search_log import NullSearchLog, SearchAttempt, SearchLog
from gastozap.services.rule_extract.extractor import detect_transaction_type, extract_basic
from gastozap.utils.text import fold

logger = logging.getLogger(__name__)

FAST_PATH_MAX_RESULTS = 3
REVALIDATION_BOOST = 0.1

MSG_UNAVAILABLE = "I couldn't process this message right now. Please try again in a moment."
MSG_FAILED = "Something went wrong while processing this message. Please try again."
MSG_REENTRY = "This message was already processed."

# Corrections into these buckets are never learned as keywords.
_GENERIC_CATEGORIES = frozenset({"outros", "geral", fold(DEFAULT_CATEGORY)})


class _Run:
    """Mutable bookkeeping for one pipeline run."""

    def __init__(self) -> None:
        self.trail: list[PipelineState] = [PipelineState.START]
        self.provider_calls = 0
        self.transcript: Optional[str] = None

    def enter(self, state: PipelineState) -> None:
        self.trail.append(state)


class ExtractionPipeline:
    def __init__(
        self,
        index: CategoryIndex,
        orchestrator: ProviderOrchestrator,
        config_source: ConfigSource,
        *,
        confirmations: Optional[ConfirmationStore] = None,
        sink: Optional[TransactionSink] = None,
        category_source: Optional[CategorySource] = None,
        search_log: Optional[SearchLog] = None,
    ) -> None:
        self._index = index
        self._orchestrator = orchestrator
        self._config_source = config_source
        self._confirmations = confirmations or MemoryConfirmationStore()
        self._sink = sink
        self._category_source = category_source
        self._search_log = search_log or NullSearchLog()
        self._pending: set[asyncio.Task] = set()

    @property
    def confirmations(self) -> ConfirmationStore:
        return self._confirmations

    # --- public entry points ---

    async def process_text(
        self,
        text: str,
        context: PipelineContext,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> PipelineOutcome:
        cfg = config or self._config_source.snapshot()
        run = _Run()
        return await self._guarded(run, context, self._text_flow(text, context, cfg, run))

    async def process_image(
        self,
        image: bytes,
        context: PipelineContext,
        *,
        mime_type: str = "image/jpeg",
        config: Optional[AIRuntimeConfig] = None,
    ) -> PipelineOutcome:
        cfg = config or self._config_source.snapshot()
        run = _Run()
        return await self._guarded(run, context, self._image_flow(image, mime_type, context, cfg, run))

    async def process_audio(
        self,
        audio: bytes,
        context: PipelineContext,
        *,
        mime_type: str = "audio/ogg",
        filename: str = "audio.ogg",
        config: Optional[AIRuntimeConfig] = None,
    ) -> PipelineOutcome:
        cfg = config or self._config_source.snapshot()
        run = _Run()
        return await self._guarded(
            run, context, self._audio_flow(audio, mime_type, filename, context, cfg, run)
        )

    async def resume(
        self,
        record: ExtractionResult,
        context: PipelineContext,
        *,
        config: Optional[AIRuntimeConfig] = None,
        learn_term: Optional[str] = None,
    ) -> PipelineOutcome:
        """Validate and decide on an externally corrected record, without extracting again.

        With *learn_term* (the word the user's message used for the category),
        an accepted correction is also learned as a tenant keyword, so the next
        message using that word resolves on the fast path.
        """
        cfg = config or self._config_source.snapshot()
        run = _Run()
        try:
            entries = await self._entries(context)
            tx = record if isinstance(record, TransactionRecord) else TransactionRecord.from_extraction(record)
            if not tx.account_id and context.account_id:
                tx = tx.model_copy(update={"account_id": context.account_id})
            tx = self._resolve_ids(tx, entries)
            outcome = await self._decide(tx, OutcomeSource.MANUAL, None, context, cfg, run)
            if learn_term and not outcome.rejected:
                learned = self._learn(context.tenant_id, learn_term, outcome.record)
                if learned is not None:
                    outcome = dataclasses.replace(outcome, learned=learned)
            return outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Resume failed for tenant %s", context.tenant_id)
            return self._rejected(run, MSG_FAILED, errors=(MSG_FAILED,))

    # --- flows ---

    async def _guarded(self, run: _Run, context: PipelineContext, flow) -> PipelineOutcome:
        if context.extraction_done:
            flow.close()
            logger.warning("Re-entry blocked for tenant %s message %s", context.tenant_id, context.message_id)
            return self._rejected(run, MSG_REENTRY, errors=(str(PipelineReentry(MSG_REENTRY)),))
        context.extraction_done = True
        try:
            return await flow
        except asyncio.CancelledError:
            raise
        except ValidationFailed as exc:
            return self._rejected(run, exc.errors[0] if exc.errors else MSG_FAILED, errors=tuple(exc.errors))
        except (ProviderUnavailable, RateLimitExceeded) as exc:
            logger.warning("Extraction unavailable for tenant %s: %s", context.tenant_id, exc)
            return self._rejected(run, MSG_UNAVAILABLE, errors=(str(exc),))
        except Exception:
            logger.exception("Pipeline failed for tenant %s", context.tenant_id)
            return self._rejected(run, MSG_FAILED, errors=(MSG_FAILED,))

    async def _text_flow(self, text: str, context: PipelineContext, cfg: AIRuntimeConfig, run: _Run) -> PipelineOutcome:
        if not text or not text.strip():
            raise ValidationFailed(["Please describe the transaction, e.g. 'spent 25.90 on lunch'."])

        entries = await self._entries(context)
        rag_enabled = cfg.rag_enabled if context.rag_enabled is None else context.rag_enabled
        thresholds = cfg.thresholds

        if rag_enabled and entries:
            run.enter(PipelineState.FAST_MATCH)
            started = time.perf_counter()
            matches = self._index.query(
                context.tenant_id,
                text,
                min_score=thresholds.fast_path_min_score,
                max_results=FAST_PATH_MAX_RESULTS,
                transaction_type=detect_transaction_type(text),
            )
            self._log_search(
                SearchAttempt(
                    tenant_id=context.tenant_id,
                    step=PipelineState.FAST_MATCH.value,
                    query=text,
                    threshold=thresholds.fast_path,
                    matches=tuple(matches),
                    response_time_ms=(time.perf_counter() - started) * 1000,
                )
            )
            if matches and matches[0].score >= thresholds.fast_path:
                top = matches[0]
                run.enter(PipelineState.DONE)
                basic = extract_basic(text, now=context.now)
                record = TransactionRecord.from_extraction(
                    basic,
                    account_id=context.account_id,
                    category=top.category_name,
                    sub_category=top.sub_category_name,
                    category_id=top.category_id,
                    sub_category_id=top.sub_category_id,
                    confidence=top.score,
                )
                logger.info(
                    "Fast path resolved %s/%s (score=%.4f) for tenant %s",
                    top.category_name,
                    top.sub_category_name,
                    top.score,
                    context.tenant_id,
                )
                return await self._decide(record, OutcomeSource.RAG_DIRECT, top, context, cfg, run)

        run.enter(PipelineState.AI_EXTRACT)
        result = await self._orchestrator.extract_text(
            text,
            OperationContext(tenant_id=context.tenant_id, catalog=tuple(entries)),
            config=cfg,
        )
        run.provider_calls += result.provider_calls
        record = TransactionRecord.from_extraction(result.value, account_id=context.account_id)

        run.enter(PipelineState.REVALIDATE)
        record, match, source = self._revalidate(record, [text], entries, context, cfg, rag_enabled)
        return await self._decide(record, source, match, context, cfg, run)

    async def _image_flow(
        self,
        image: bytes,
        mime_type: str,
        context: PipelineContext,
        cfg: AIRuntimeConfig,
        run: _Run,
    ) -> PipelineOutcome:
        entries = await self._entries(context)
        rag_enabled = cfg.rag_enabled if context.rag_enabled is None else context.rag_enabled

        run.enter(PipelineState.AI_EXTRACT)
        result = await self._orchestrator.analyze_image(
            image,
            OperationContext(tenant_id=context.tenant_id, catalog=tuple(entries), mime_type=mime_type),
            config=cfg,
        )
        run.provider_calls += result.provider_calls
        record = TransactionRecord.from_extraction(result.value, account_id=context.account_id)

        run.enter(PipelineState.REVALIDATE)
        queries = [record.description] if record.description else []
        record, match, source = self._revalidate(record, queries, entries, context, cfg, rag_enabled)
        return await self._decide(record, source, match, context, cfg, run)

    async def _audio_flow(
        self,
        audio: bytes,
        mime_type: str,
        filename: str,
        context: PipelineContext,
        cfg: AIRuntimeConfig,
        run: _Run,
    ) -> PipelineOutcome:
        result = await self._orchestrator.transcribe_audio(
            audio,
            OperationContext(tenant_id=context.tenant_id, mime_type=mime_type, filename=filename),
            config=cfg,
        )
        run.provider_calls += result.provider_calls
        run.transcript = result.value
        logger.info("Audio transcribed for tenant %s (%d chars)", context.tenant_id, len(result.value))
        return await self._text_flow(result.value, context, cfg, run)

    # --- phases ---

    async def _entries(self, context: PipelineContext) -> list[CategoryEntry]:
        if context.catalog is not None:
            self._index.index(context.tenant_id, context.catalog)
        elif self._category_source is not None and not self._index.is_indexed(context.tenant_id):
            fetched = await self._category_source.get_categories(context.tenant_id, context.account_id)
            self._index.index(context.tenant_id, fetched)
        return list(self._index.entries(context.tenant_id))

    def _revalidate(
        self,
        record: TransactionRecord,
        extra_queries: Sequence[str],
        entries: Sequence[CategoryEntry],
        context: PipelineContext,
        cfg: AIRuntimeConfig,
        rag_enabled: bool,
    ) -> tuple[TransactionRecord, Optional[RetrievalMatch], OutcomeSource]:
        thresholds = cfg.thresholds
        best: Optional[RetrievalMatch] = None
        if rag_enabled and entries:
            category_text = " ".join(part for part in (record.category, record.sub_category) if part)
            queries = [q for q in (*extra_queries, category_text) if q]
            best_query = queries[0] if queries else ""
            started = time.perf_counter()
            for query in queries:
                found = self._index.query(
                    context.tenant_id,
                    query,
                    min_score=thresholds.revalidation_min_score,
                    max_results=1,
                    transaction_type=record.type,
                )
                if found and (best is None or found[0].score > best.score):
                    best, best_query = found[0], query
            if queries:
                self._log_search(
                    SearchAttempt(
                        tenant_id=context.tenant_id,
                        step=PipelineState.REVALIDATE.value,
                        query=best_query,
                        threshold=thresholds.revalidation,
                        matches=(best,) if best else (),
                        response_time_ms=(time.perf_counter() - started) * 1000,
                    )
                )

        if best is not None and best.score >= thresholds.revalidation:
            boosted = round(min(record.confidence + best.score * REVALIDATION_BOOST, 1.0), 4)
            logger.info(
                "Retrieval overrides %r -> %s/%s (score=%.4f, confidence %.4f -> %.4f)",
                record.category,
                best.category_name,
                best.sub_category_name,
                best.score,
                record.confidence,
                boosted,
            )
            record = record.model_copy(
                update={
                    "category": best.category_name,
                    "sub_category": best.sub_category_name,
                    "category_id": best.category_id,
                    "sub_category_id": best.sub_category_id,
                    "confidence": boosted,
                }
            )
            return record, best, OutcomeSource.AI_RAG_VALIDATED

        return self._resolve_ids(record, entries), best, OutcomeSource.AI_ONLY

    @staticmethod
    def _resolve_ids(record: TransactionRecord, entries: Sequence[CategoryEntry]) -> TransactionRecord:
        """Fill category/subcategory ids by name, preferring entries of the record's type."""
        if record.category_id and (record.sub_category_id or not record.sub_category):
            return record
        wanted_category = fold(record.category)
        wanted_sub = fold(record.sub_category)

        def rank(entry: CategoryEntry) -> int:
            return 0 if entry.transaction_type in (None, record.type) else 1

        candidates = sorted((e for e in entries if fold(e.category_name) == wanted_category), key=rank)
        if not candidates:
            return record
        chosen = candidates[0]
        sub_category_id = None
        sub_name = record.sub_category
        if wanted_sub:
            for entry in candidates:
                if entry.sub_category_id and fold(entry.sub_category_name) == wanted_sub:
                    chosen = entry
                    sub_category_id, sub_name = entry.sub_category_id, entry.sub_category_name
                    break
        return record.model_copy(
            update={
                "category": chosen.category_name,
                "category_id": chosen.category_id,
                "sub_category_id": sub_category_id,
                "sub_category": sub_name,
            }
        )

    def _learn(self, tenant_id: str, term: str, record: Optional[TransactionRecord]) -> Optional[LearnedSynonym]:
        if record is None or not record.category_id or fold(record.category) in _GENERIC_CATEGORIES:
            return None
        sub_generic = not record.sub_category_id or fold(record.sub_category) in _GENERIC_CATEGORIES
        try:
            return self._index.learn(
                tenant_id,
                term,
                category_id=record.category_id,
                category_name=record.category,
                sub_category_id=None if sub_generic else record.sub_category_id,
                sub_category_name=None if sub_generic else record.sub_category,
            )
        except ValueError as exc:
            logger.info("Correction not learned for tenant %s: %s", tenant_id, exc)
            return None

    # --- search analytics ---

    def _log_search(self, attempt: SearchAttempt) -> None:
        """Hand *attempt* to the search log without waiting; failures are only logged."""
        if isinstance(self._search_log, NullSearchLog):
            return
        try:
            task = asyncio.get_running_loop().create_task(asyncio.to_thread(self._search_log.record, attempt))
        except RuntimeError:
            try:
                self._search_log.record(attempt)
            except Exception:
                logger.warning("Search log write failed for tenant %s", attempt.tenant_id, exc_info=True)
            return
        self._pending.add(task)
        task.add_done_callback(self._search_done)

    def _search_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Search log write failed: %s", exc)

    async def flush_search_log(self) -> None:
        """Wait for search log writes still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _decide(
        self,
        record: TransactionRecord,
        source: OutcomeSource,
        match: Optional[RetrievalMatch],
        context: PipelineContext,
        cfg: AIRuntimeConfig,
        run: _Run,
    ) -> PipelineOutcome:
        now = context.now or datetime.now(timezone.utc)
        report = validate_record(record, min_confidence=cfg.thresholds.min_confidence, now=now)
        if not report.ok:
            logger.info("Validation rejected record for tenant %s: %s", context.tenant_id, report.errors)
            return self._rejected(
                run,
                report.errors[0],
                errors=report.errors,
                warnings=report.warnings,
                record=record,
                source=source,
                match=match,
            )
        run.enter(PipelineState.VALIDATED)

        registration_error = None
        if record.fully_resolved and record.confidence >= cfg.thresholds.auto_register:
            run.enter(PipelineState.AUTO_REGISTER)
            if self._sink is None:
                return self._outcome(
                    run,
                    PipelineState.AUTO_REGISTER,
                    "Transaction ready to be registered.",
                    record=record,
                    source=source,
                    match=match,
                    warnings=report.warnings,
                )
            try:
                sink_result = await self._sink.create_transaction(record)
                if not sink_result.success:
                    raise RegistrationFailed(sink_result.error or "transaction sink refused the record")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                registration_error = str(exc)
                logger.warning(
                    "Auto-registration failed for tenant %s, falling back to confirmation: %s",
                    context.tenant_id,
                    exc,
                )
            else:
                return self._outcome(
                    run,
                    PipelineState.AUTO_REGISTER,
                    "Transaction registered.",
                    record=record,
                    source=source,
                    match=match,
                    warnings=report.warnings,
                    transaction_id=sink_result.id,
                )

        run.enter(PipelineState.PENDING_CONFIRMATION)
        confirmation = await self._confirmations.create(
            context.tenant_id,
            context.account_id,
            record,
            ttl_seconds=cfg.confirmation_ttl_seconds,
        )
        message = "Please confirm this transaction."
        if registration_error:
            message = "I couldn't register it automatically. Please confirm this transaction."
        return self._outcome(
            run,
            PipelineState.PENDING_CONFIRMATION,
            message,
            record=record,
            source=source,
            match=match,
            warnings=report.warnings,
            errors=(registration_error,) if registration_error else (),
            confirmation=confirmation,
        )

    # --- outcome builders ---

    @staticmethod
    def _outcome(run: _Run, state: PipelineState, message: str, **kwargs) -> PipelineOutcome:
        return PipelineOutcome(
            state=state,
            message=message,
            provider_calls=run.provider_calls,
            transcript=run.transcript,
            trail=tuple(run.trail),
            **kwargs,
        )

    def _rejected(self, run: _Run, message: str, **kwargs) -> PipelineOutcome:
        run.enter(PipelineState.REJECTED)
        return self._outcome(run, PipelineState.REJECTED, message, **kwargs)
