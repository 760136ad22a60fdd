"""Groq provider (OpenAI-compatible API, no vision)."""

from __future__ import annotations

from gastozap.core.runtime import OperationKind

from .openai import OpenAIProvider


class GroqProvider(OpenAIProvider):
    name = "groq"
    base_url = "https://api.groq.com/openai/v1"
    capabilities = frozenset(
        {OperationKind.EXTRACT_TEXT, OperationKind.TRANSCRIBE_AUDIO, OperationKind.SUGGEST_CATEGORY}
    )

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "llama-3.1-70b-versatile",
        audio_model: str = "whisper-large-v3",
    ) -> None:
        super().__init__(api_key, model=model, vision_model="", audio_model=audio_model)
