"""Provider orchestration: cache, rate limits, per-attempt timeout and ordered fallback.

For every provider in the plan (active provider first, then the configured
fallback chain, filtered by registration and capability):

  1. cache hit  -> return it, no meter check, no provider call;
  2. meter says no -> try the next provider;
  3. call under ``attempt_timeout_seconds``; error/timeout -> next provider;
  4. success -> normalize, record usage, write the cache, log to the ledger.

``suggest-category`` never raises once the plan is exhausted: it answers
``"Other"``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from gastozap.core.errors import ProviderUnavailable, RateLimitExceeded, UnsupportedOperation
from gastozap.core.runtime import ESTIMATED_TOKENS, AIRuntimeConfig, ConfigSource, OperationKind
from gastozap.services.ai.common.cache import ResultCache
from gastozap.services.ai.common.json_tools import extract_json_object
from gastozap.services.ai.common.ledger import NullUsageLedger, UsageLedger, UsageRecord, hash_input
from gastozap.services.ai.common.providers import BaseProvider, ProviderRegistry, ProviderResult
from gastozap.services.ai.finance_extract import prompts
from gastozap.services.ai.finance_extract.contracts import DEFAULT_CATEGORY, ExtractionResult
from gastozap.utils.text import fold
from gastozap.utils.usage_meter import Metric, UsageMeter

logger = logging.getLogger(__name__)

_CATEGORY_ANSWER_MAX = 60

Payload = Union[str, bytes]


@dataclass(frozen=True)
class OperationContext:
    tenant_id: Optional[str] = None
    catalog: tuple = ()
    categories: tuple[str, ...] = ()
    mime_type: str = ""
    filename: str = ""

    def category_names(self) -> list[str]:
        if self.categories:
            return list(self.categories)
        return list(dict.fromkeys(entry.category_name for entry in self.catalog))


@dataclass(frozen=True)
class OrchestratorResult:
    operation: OperationKind
    value: Any
    provider: str
    model: str = ""
    cached: bool = False
    attempts: tuple[str, ...] = ()
    provider_calls: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)


def match_category(answer: str, categories: Sequence[str]) -> str:
    """Map a free-text model answer back onto the tenant's category names."""
    first_line = (answer or "").strip().splitlines()[0] if (answer or "").strip() else ""
    cleaned = first_line.strip().strip("\"'`.*:- ").strip()
    if not cleaned:
        return DEFAULT_CATEGORY
    if not categories:
        return cleaned[:_CATEGORY_ANSWER_MAX]

    wanted = fold(cleaned)
    for name in categories:
        if fold(name) == wanted:
            return name
    contained = [name for name in categories if fold(name) and fold(name) in wanted]
    if contained:
        return max(contained, key=len)
    return DEFAULT_CATEGORY


class ProviderOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        meter: UsageMeter,
        cache: ResultCache,
        config_source: ConfigSource,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        self._registry = registry
        self._meter = meter
        self._cache = cache
        self._config_source = config_source
        self._ledger = ledger or NullUsageLedger()
        self._pending: set[asyncio.Task] = set()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def plan(self, operation: OperationKind, config: Optional[AIRuntimeConfig] = None) -> list[str]:
        cfg = config or self._config_source.snapshot()
        names = [cfg.active_provider(operation)]
        if cfg.fallback_enabled:
            names.extend(n for n in cfg.chain_for(operation) if n not in names)

        planned = []
        for name in names:
            provider = self._registry.get(name)
            if provider is None:
                logger.debug("Skipping %s for %s: not registered", name, operation.value)
                continue
            if not provider.supports(operation):
                logger.debug("Skipping %s for %s: capability missing", name, operation.value)
                continue
            planned.append(name)
        return planned

    async def run(
        self,
        operation: OperationKind,
        payload: Payload,
        context: Optional[OperationContext] = None,
        *,
        config: Optional[AIRuntimeConfig] = None,
    ) -> OrchestratorResult:
        operation = OperationKind(operation)
        cfg = config or self._config_source.snapshot()
        context = context or OperationContext()
        plan = self.plan(operation, cfg)

        attempts: list[str] = []
        errors: list[str] = []
        calls = 0
        last_error: Optional[Exception] = None
        only_rate_limited = True

        for name in plan:
            provider = self._registry.get(name)

            entry = await self._cache.get(name, operation, payload, config=cfg)
            if entry is not None:
                value = self._from_cache(operation, entry.payload)
                self.log_usage(
                    UsageRecord(
                        provider=name,
                        operation=operation.value,
                        tenant_id=context.tenant_id,
                        cache_hit=True,
                        input_hash=hash_input(payload),
                    )
                )
                return OrchestratorResult(
                    operation=operation,
                    value=value,
                    provider=name,
                    cached=True,
                    attempts=tuple(attempts + [name]),
                    provider_calls=calls,
                    errors=tuple(errors),
                )

            attempts.append(name)
            estimated = ESTIMATED_TOKENS[operation]
            if not await self._meter.allows(name, estimated, config=cfg):
                last_error = RateLimitExceeded(name)
                errors.append(str(last_error))
                logger.warning("%s rate limited for %s, trying next provider", name, operation.value)
                continue

            only_rate_limited = False
            calls += 1
            try:
                result = await asyncio.wait_for(
                    self._invoke(provider, operation, payload, context, cfg),
                    timeout=cfg.attempt_timeout_seconds,
                )
                value = self._normalize(operation, result, context)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = ProviderUnavailable(
                    f"{name} timed out after {cfg.attempt_timeout_seconds}s", attempted=attempts
                )
            except UnsupportedOperation as exc:
                last_error = exc
            except Exception as exc:
                last_error = ProviderUnavailable(f"{name} failed: {type(exc).__name__}: {exc}", attempted=attempts)
            else:
                await self._meter.record_usage(name, Metric.REQUESTS, 1, config=cfg)
                await self._meter.record_usage(name, Metric.TOKENS, result.total_tokens or estimated, config=cfg)
                await self._cache.put(name, operation, payload, self._to_payload(value), config=cfg)
                self.log_usage(
                    UsageRecord(
                        provider=name,
                        operation=operation.value,
                        model=result.model,
                        tenant_id=context.tenant_id,
                        prompt_tokens=result.prompt_tokens,
                        completion_tokens=result.completion_tokens,
                        latency_ms=result.latency_ms,
                        input_hash=hash_input(payload),
                        metadata=self._raw_metadata(payload, result),
                    )
                )
                return OrchestratorResult(
                    operation=operation,
                    value=value,
                    provider=name,
                    model=result.model,
                    attempts=tuple(attempts),
                    provider_calls=calls,
                    errors=tuple(errors),
                )

            errors.append(str(last_error))
            logger.warning("Provider attempt failed for %s: %s", operation.value, last_error)
            self.log_usage(
                UsageRecord(
                    provider=name,
                    operation=operation.value,
                    tenant_id=context.tenant_id,
                    success=False,
                    input_hash=hash_input(payload),
                    error=str(last_error),
                )
            )

        if operation == OperationKind.SUGGEST_CATEGORY:
            logger.warning("Category suggestion exhausted %s, answering %r", attempts or "no providers", DEFAULT_CATEGORY)
            return OrchestratorResult(
                operation=operation,
                value=DEFAULT_CATEGORY,
                provider="",
                attempts=tuple(attempts),
                provider_calls=calls,
                errors=tuple(errors),
            )

        if isinstance(last_error, RateLimitExceeded) and only_rate_limited:
            raise last_error
        if last_error is None:
            raise ProviderUnavailable(f"No provider available for {operation.value}", attempted=attempts)
        raise ProviderUnavailable(
            f"All providers failed for {operation.value}: {last_error}", attempted=attempts
        ) from last_error

    # --- convenience wrappers ---

    async def extract_text(self, text: str, context: Optional[OperationContext] = None, **kwargs) -> OrchestratorResult:
        return await self.run(OperationKind.EXTRACT_TEXT, text, context, **kwargs)

    async def analyze_image(self, image: bytes, context: Optional[OperationContext] = None, **kwargs) -> OrchestratorResult:
        return await self.run(OperationKind.ANALYZE_IMAGE, image, context, **kwargs)

    async def transcribe_audio(self, audio: bytes, context: Optional[OperationContext] = None, **kwargs) -> OrchestratorResult:
        return await self.run(OperationKind.TRANSCRIBE_AUDIO, audio, context, **kwargs)

    async def suggest_category(self, description: str, context: Optional[OperationContext] = None, **kwargs) -> OrchestratorResult:
        return await self.run(OperationKind.SUGGEST_CATEGORY, description, context, **kwargs)

    # --- usage ledger ---

    def log_usage(self, record: UsageRecord) -> None:
        """Hand *record* to the ledger without waiting; failures are only logged."""
        if isinstance(self._ledger, NullUsageLedger):
            return
        try:
            task = asyncio.get_running_loop().create_task(asyncio.to_thread(self._ledger.log_usage, record))
        except RuntimeError:
            self._write_usage(record)
            return
        self._pending.add(task)
        task.add_done_callback(self._usage_done)

    def _write_usage(self, record: UsageRecord) -> None:
        try:
            self._ledger.log_usage(record)
        except Exception:
            logger.warning("Usage ledger write failed for %s/%s", record.provider, record.operation, exc_info=True)

    def _usage_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Usage ledger write failed: %s", exc)

    async def flush_usage(self) -> None:
        """Wait for ledger writes still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- internals ---

    async def _invoke(
        self,
        provider: BaseProvider,
        operation: OperationKind,
        payload: Payload,
        context: OperationContext,
        cfg: AIRuntimeConfig,
    ) -> ProviderResult:
        timeout = cfg.attempt_timeout_seconds
        if operation == OperationKind.EXTRACT_TEXT:
            system, user = prompts.transaction_prompt(str(payload), context.catalog)
            return await provider.generate(
                user,
                system_prompt=system,
                temperature=cfg.temperature,
                max_tokens=cfg.max_tokens,
                timeout_seconds=timeout,
            )
        if operation == OperationKind.ANALYZE_IMAGE:
            return await provider.analyze_image(
                bytes(payload) if not isinstance(payload, str) else payload.encode(),
                prompts.image_prompt(context.catalog),
                mime_type=context.mime_type or "image/jpeg",
                temperature=cfg.temperature,
                max_tokens=cfg.max_tokens,
                timeout_seconds=timeout,
            )
        if operation == OperationKind.TRANSCRIBE_AUDIO:
            return await provider.transcribe(
                bytes(payload) if not isinstance(payload, str) else payload.encode(),
                filename=context.filename or "audio.ogg",
                mime_type=context.mime_type or "audio/ogg",
                timeout_seconds=timeout,
            )
        system, user = prompts.category_prompt(str(payload), context.category_names())
        return await provider.generate(
            user,
            system_prompt=system,
            temperature=0.0,
            max_tokens=50,
            timeout_seconds=timeout,
        )

    @staticmethod
    def _normalize(operation: OperationKind, result: ProviderResult, context: OperationContext) -> Any:
        if operation in (OperationKind.EXTRACT_TEXT, OperationKind.ANALYZE_IMAGE):
            parsed = extract_json_object(result.raw_text)
            if parsed is None:
                raise ValueError(f"no JSON object in {result.provider} response")
            return ExtractionResult.from_raw(parsed).normalize()
        if operation == OperationKind.TRANSCRIBE_AUDIO:
            transcript = result.raw_text.strip()
            if not transcript:
                raise ValueError(f"empty transcript from {result.provider}")
            return transcript
        return match_category(result.raw_text, context.category_names())

    @staticmethod
    def _to_payload(value: Any) -> Any:
        if isinstance(value, ExtractionResult):
            return value.to_payload()
        return value

    @staticmethod
    def _from_cache(operation: OperationKind, payload: Any) -> Any:
        if operation in (OperationKind.EXTRACT_TEXT, OperationKind.ANALYZE_IMAGE):
            return ExtractionResult.model_validate(payload)
        return payload

    @staticmethod
    def _raw_metadata(payload: Payload, result: ProviderResult) -> dict[str, Any]:
        metadata: dict[str, Any] = {"response_hash": hash_input(result.raw_text)}
        if isinstance(payload, str):
            metadata["input_raw"] = payload
            metadata["response_raw"] = result.raw_text
        return metadata
