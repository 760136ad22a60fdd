"""OpenAI provider (chat, vision and Whisper transcription)."""

from __future__ import annotations

import base64
import logging
import time

from gastozap.core.runtime import OperationKind

from .base import BaseProvider, ProviderResult

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    name = "openai"
    base_url = "https://api.openai.com/v1"
    capabilities = frozenset(OperationKind)

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        vision_model: str = "gpt-4o-mini",
        audio_model: str = "whisper-1",
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._vision_model = vision_model
        self._audio_model = audio_model

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def _chat(
        self,
        messages: list[dict],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> ProviderResult:
        import httpx

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers={**self._headers(), "Content-Type": "application/json"},
                json={
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "messages": messages,
                },
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = data["choices"][0]["message"]["content"] or ""
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=data.get("model") or model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
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
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self._chat(
            messages,
            model=model or self._model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

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
        if not self.supports(OperationKind.ANALYZE_IMAGE):
            return await super().analyze_image(image, prompt)
        encoded = base64.b64encode(image).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                ],
            }
        ]
        return await self._chat(
            messages,
            model=model or self._vision_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "audio.ogg",
        mime_type: str = "audio/ogg",
        model: str = "",
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        if not self.supports(OperationKind.TRANSCRIBE_AUDIO):
            return await super().transcribe(audio)
        import httpx

        model = model or self._audio_model
        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{self.base_url}/audio/transcriptions",
                headers=self._headers(),
                data={"model": model, "language": "pt", "response_format": "json"},
                files={"file": (filename, audio, mime_type)},
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=str(data.get("text", "")).strip(),
            model=model,
            provider=self.name,
            latency_ms=round(elapsed, 2),
        )
