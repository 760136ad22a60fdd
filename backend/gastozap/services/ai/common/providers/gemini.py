"""Google Gemini provider (text and vision, no audio)."""

from __future__ import annotations

import base64
import logging
import time

from gastozap.core.runtime import OperationKind

from .base import BaseProvider, ProviderResult

logger = logging.getLogger(__name__)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiProvider(BaseProvider):
    name = "gemini"
    capabilities = frozenset(
        {OperationKind.EXTRACT_TEXT, OperationKind.ANALYZE_IMAGE, OperationKind.SUGGEST_CATEGORY}
    )

    def __init__(self, api_key: str, *, model: str = "gemini-1.5-flash") -> None:
        self._api_key = api_key
        self._model = model

    async def _generate_content(
        self,
        parts: list[dict],
        *,
        system_prompt: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> ProviderResult:
        import httpx

        model = model or self._model
        body: dict = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{_BASE_URL}/{model}:generateContent",
                params={"key": self._api_key},
                headers={"Content-Type": "application/json"},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        candidates = data.get("candidates") or []
        if not candidates:
            raise ValueError(f"Gemini returned no candidates: {data.get('promptFeedback')}")
        text = "".join(part.get("text", "") for part in candidates[0].get("content", {}).get("parts", []))
        usage = data.get("usageMetadata", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
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
        return await self._generate_content(
            [{"text": prompt}],
            system_prompt=system_prompt,
            model=model,
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
        parts = [
            {"text": prompt},
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(image).decode("ascii")}},
        ]
        return await self._generate_content(
            parts,
            system_prompt=None,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )
