"""Anthropic / Claude provider."""

from __future__ import annotations

import base64
import logging
import time

from gastozap.core.runtime import OperationKind

from .base import BaseProvider, ProviderResult

logger = logging.getLogger(__name__)


class ClaudeProvider(BaseProvider):
    name = "claude"
    capabilities = frozenset(
        {OperationKind.EXTRACT_TEXT, OperationKind.ANALYZE_IMAGE, OperationKind.SUGGEST_CATEGORY}
    )

    def __init__(self, api_key: str, *, model: str = "claude-3-5-haiku-20241022") -> None:
        self._api_key = api_key
        self._model = model

    async def _messages(
        self,
        content: list[dict] | str,
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
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            body["system"] = system_prompt

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
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
        return await self._messages(
            prompt,
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
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": mime_type,
                    "data": base64.b64encode(image).decode("ascii"),
                },
            },
            {"type": "text", "text": prompt},
        ]
        return await self._messages(
            content,
            system_prompt=None,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )
