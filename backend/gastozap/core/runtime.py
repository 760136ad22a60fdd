"""Runtime AI configuration: immutable snapshots swapped atomically.

Components never read ``get_settings()`` directly while serving a request.
They receive an ``AIRuntimeConfig`` (usually via ``ConfigSource.snapshot()``)
so a reload mid-request cannot tear the view of thresholds/chains.
"""

from __future__ import annotations

import logging
from enum import Enum
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field

from gastozap.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    EXTRACT_TEXT = "extract-text"
    ANALYZE_IMAGE = "analyze-image"
    TRANSCRIBE_AUDIO = "transcribe-audio"
    SUGGEST_CATEGORY = "suggest-category"


# Token estimates used by the meter before a call is issued.
ESTIMATED_TOKENS: dict[OperationKind, int] = {
    OperationKind.EXTRACT_TEXT: 500,
    OperationKind.ANALYZE_IMAGE: 1000,
    OperationKind.TRANSCRIBE_AUDIO: 800,
    OperationKind.SUGGEST_CATEGORY: 200,
}

KNOWN_PROVIDERS = ("openai", "gemini", "groq", "deepseek", "claude", "mock")


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    rpm: int = 0
    tpm: int = 0


class Thresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    fast_path: float = 0.6
    fast_path_min_score: float = 0.4
    revalidation: float = 0.6
    revalidation_min_score: float = 0.5
    auto_register: float = 0.9
    min_confidence: float = 0.5


class AIRuntimeConfig(BaseModel):
    """Immutable view of everything the extraction core reads per call."""

    model_config = ConfigDict(frozen=True)

    active: dict[OperationKind, str] = Field(default_factory=dict)
    fallback_enabled: bool = False
    fallback_chains: dict[OperationKind, tuple[str, ...]] = Field(default_factory=dict)
    rate_limits: dict[str, RateLimit] = Field(default_factory=dict)
    cache_enabled: bool = True
    cache_ttl_seconds: dict[OperationKind, int] = Field(default_factory=dict)
    default_cache_ttl_seconds: int = 86400
    rag_enabled: bool = True
    thresholds: Thresholds = Field(default_factory=Thresholds)
    temperature: float = 0.1
    max_tokens: int = 1024
    attempt_timeout_seconds: float = 15.0
    storage_timeout_seconds: float = 0.5
    confirmation_ttl_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIRuntimeConfig":
        chains = {
            OperationKind.EXTRACT_TEXT: tuple(settings.ai_fallback_text_chain),
            OperationKind.ANALYZE_IMAGE: tuple(settings.ai_fallback_image_chain),
            OperationKind.TRANSCRIBE_AUDIO: tuple(settings.ai_fallback_audio_chain),
            OperationKind.SUGGEST_CATEGORY: tuple(settings.ai_fallback_category_chain),
        }
        limits = {}
        for name in KNOWN_PROVIDERS:
            rpm, tpm = settings.rate_limit_for(name)
            limits[name] = RateLimit(rpm=max(0, rpm), tpm=max(0, tpm))

        return cls(
            active={
                OperationKind.EXTRACT_TEXT: settings.ai_text_provider or "mock",
                OperationKind.ANALYZE_IMAGE: settings.ai_image_provider or "mock",
                OperationKind.TRANSCRIBE_AUDIO: settings.ai_audio_provider or "mock",
                OperationKind.SUGGEST_CATEGORY: settings.ai_category_provider or "mock",
            },
            fallback_enabled=settings.ai_fallback_enabled,
            fallback_chains=chains,
            rate_limits=limits,
            cache_enabled=settings.ai_cache_enabled,
            default_cache_ttl_seconds=settings.ai_cache_ttl_seconds,
            rag_enabled=settings.rag_enabled,
            thresholds=Thresholds(
                fast_path=settings.rag_fast_path_threshold,
                fast_path_min_score=settings.rag_fast_path_min_score,
                revalidation=settings.rag_revalidation_threshold,
                revalidation_min_score=settings.rag_revalidation_min_score,
                auto_register=settings.auto_register_threshold,
                min_confidence=settings.min_confidence_threshold,
            ),
            temperature=settings.ai_temperature,
            max_tokens=settings.ai_max_tokens,
            attempt_timeout_seconds=settings.ai_attempt_timeout_seconds,
            storage_timeout_seconds=settings.storage_timeout_seconds,
            confirmation_ttl_seconds=settings.confirmation_ttl_seconds,
        )

    def active_provider(self, operation: OperationKind) -> str:
        return self.active.get(operation, "mock")

    def chain_for(self, operation: OperationKind) -> list[str]:
        return list(self.fallback_chains.get(operation, ()))

    def limit_for(self, provider: str) -> RateLimit:
        # Providers without configured limits are unmetered.
        return self.rate_limits.get(provider, RateLimit())

    def ttl_for(self, operation: OperationKind) -> int:
        return int(self.cache_ttl_seconds.get(operation, self.default_cache_ttl_seconds))


class ConfigSource:
    """Holds the current ``AIRuntimeConfig`` and replaces it atomically."""

    def __init__(self, initial: AIRuntimeConfig | None = None) -> None:
        self._lock = Lock()
        self._current = initial or AIRuntimeConfig.from_settings(get_settings())
        self._version = 1

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> AIRuntimeConfig:
        with self._lock:
            return self._current

    def swap(self, new_config: AIRuntimeConfig) -> AIRuntimeConfig:
        with self._lock:
            previous = self._current
            self._current = new_config
            self._version += 1
        logger.info("AI runtime config swapped (version=%d)", self._version)
        return previous

    def update(self, **changes) -> AIRuntimeConfig:
        """Derive a new snapshot from the current one and install it."""
        with self._lock:
            updated = self._current.model_copy(update=changes)
            self._current = updated
            self._version += 1
        logger.info("AI runtime config updated: %s", sorted(changes))
        return updated

    def reload(self) -> AIRuntimeConfig:
        """Re-read environment settings and install a fresh snapshot."""
        get_settings.cache_clear()
        fresh = AIRuntimeConfig.from_settings(get_settings())
        self.swap(fresh)
        return fresh
