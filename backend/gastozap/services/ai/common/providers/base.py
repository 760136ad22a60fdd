"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass

from gastozap.core.errors import UnsupportedOperation
from gastozap.core.runtime import OperationKind


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement.

    ``capabilities`` lists the operations a provider can serve; the
    orchestrator filters fallback chains by it before attempting a call.
    """

    name: str = "base"
    capabilities: frozenset[OperationKind] = frozenset(
        {OperationKind.EXTRACT_TEXT, OperationKind.SUGGEST_CATEGORY}
    )

    def supports(self, operation: OperationKind) -> bool:
        return operation in self.capabilities

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout_seconds: float = 15.0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``."""

    async def analyze_image(
        self,
        image: bytes,
        prompt: str,
        *,
        mime_type: str = "image/jpeg",
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        raise UnsupportedOperation(self.name, OperationKind.ANALYZE_IMAGE.value)

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "audio.ogg",
        mime_type: str = "audio/ogg",
        model: str = "",
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        raise UnsupportedOperation(self.name, OperationKind.TRANSCRIBE_AUDIO.value)
