"""Mock provider: deterministic responses for tests and local runs."""

from __future__ import annotations

import time

from gastozap.core.runtime import OperationKind

from .base import BaseProvider, ProviderResult

DEFAULT_REPLY = (
    '{"type": "EXPENSE", "amount": 0, "category": "Other", '
    '"description": "", "confidence": 0.5}'
)


class MockProvider(BaseProvider):
    name = "mock"
    capabilities = frozenset(OperationKind)

    def __init__(self, reply: str | None = None, *, transcript: str = "") -> None:
        self._reply = reply if reply is not None else DEFAULT_REPLY
        self._transcript = transcript
        self.calls: list[str] = []

    def _result(self, prompt: str, text: str, model: str, t0: float) -> ProviderResult:
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )

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
        t0 = time.monotonic()
        self.calls.append("generate")
        return self._result(prompt, self._reply, model, t0)

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
        t0 = time.monotonic()
        self.calls.append("analyze_image")
        return self._result(prompt, self._reply, model, t0)

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "audio.ogg",
        mime_type: str = "audio/ogg",
        model: str = "",
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        self.calls.append("transcribe")
        return self._result("", self._transcript, model, t0)
