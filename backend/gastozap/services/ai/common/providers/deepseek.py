"""DeepSeek provider (OpenAI-compatible chat only)."""

from __future__ import annotations

from gastozap.core.runtime import OperationKind

from .openai import OpenAIProvider


class DeepSeekProvider(OpenAIProvider):
    name = "deepseek"
    base_url = "https://api.deepseek.com/v1"
    capabilities = frozenset({OperationKind.EXTRACT_TEXT, OperationKind.SUGGEST_CATEGORY})

    def __init__(self, api_key: str, *, model: str = "deepseek-chat") -> None:
        super().__init__(api_key, model=model, vision_model="", audio_model="")
