"""Provider registry: builds the set of usable providers from settings."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from gastozap.core.config import Settings, get_settings
from gastozap.core.runtime import OperationKind

from .base import BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["ProviderRegistry", "build_registry", "BaseProvider", "ProviderResult", "MockProvider"]


class ProviderRegistry:
    """Name -> provider lookup, read-only once built."""

    def __init__(self, providers: Mapping[str, BaseProvider] | Iterable[BaseProvider]) -> None:
        if isinstance(providers, Mapping):
            self._providers = dict(providers)
        else:
            self._providers = {p.name: p for p in providers}

    def get(self, name: str) -> Optional[BaseProvider]:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return sorted(self._providers)

    def supporting(self, operation: OperationKind) -> list[str]:
        return [name for name in self.names() if self._providers[name].supports(operation)]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)


def _build_one(name: str, settings: Settings) -> Optional[BaseProvider]:
    if name == "mock":
        return MockProvider()

    if name == "openai":
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set – openai not registered")
            return None
        from .openai import OpenAIProvider

        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            vision_model=settings.openai_vision_model,
            audio_model=settings.openai_audio_model,
        )

    if name == "gemini":
        if not settings.gemini_api_key:
            logger.warning("GEMINI_API_KEY not set – gemini not registered")
            return None
        from .gemini import GeminiProvider

        return GeminiProvider(api_key=settings.gemini_api_key, model=settings.gemini_model)

    if name == "groq":
        if not settings.groq_api_key:
            logger.warning("GROQ_API_KEY not set – groq not registered")
            return None
        from .groq import GroqProvider

        return GroqProvider(
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            audio_model=settings.groq_audio_model,
        )

    if name == "deepseek":
        if not settings.deepseek_api_key:
            logger.warning("DEEPSEEK_API_KEY not set – deepseek not registered")
            return None
        from .deepseek import DeepSeekProvider

        return DeepSeekProvider(api_key=settings.deepseek_api_key, model=settings.deepseek_model)

    if name == "claude":
        if not settings.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set – claude not registered")
            return None
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=settings.anthropic_api_key, model=settings.claude_model)

    logger.warning("Unknown provider %r – not registered", name)
    return None


def build_registry(settings: Settings | None = None) -> ProviderRegistry:
    """Register every allow-listed provider that has credentials."""
    settings = settings or get_settings()
    providers: dict[str, BaseProvider] = {}
    for name in settings.ai_allowed_providers:
        provider = _build_one(name.lower().strip(), settings)
        if provider is not None:
            providers[provider.name] = provider
    logger.info("AI providers registered: %s", sorted(providers) or "none")
    return ProviderRegistry(providers)
