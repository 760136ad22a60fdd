from functools import lru_cache
from typing import Annotated
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip().lower() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip().lower() for item in raw.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip().lower() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)

    admin_api_token: str = Field(
        default="",
        validation_alias=AliasChoices("ADMIN_API_TOKEN", "admin_api_token"),
    )

    # --- Providers ---
    ai_allowed_providers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["openai", "gemini", "groq", "deepseek", "claude", "mock"],
    )
    openai_api_key: str = ""
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_GEMINI_API_KEY", "gemini_api_key"),
    )
    groq_api_key: str = ""
    deepseek_api_key: str = ""
    anthropic_api_key: str = ""

    openai_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o-mini"
    openai_audio_model: str = "whisper-1"
    gemini_model: str = "gemini-1.5-flash"
    groq_model: str = "llama-3.1-70b-versatile"
    groq_audio_model: str = "whisper-large-v3"
    deepseek_model: str = "deepseek-chat"
    claude_model: str = "claude-3-5-haiku-20241022"

    ai_temperature: float = 0.1
    ai_max_tokens: int = 1024
    ai_attempt_timeout_seconds: float = 15.0
    ai_debug_store_raw: bool = False

    # --- Routing per operation ---
    ai_text_provider: str = "openai"
    ai_image_provider: str = "gemini"
    ai_audio_provider: str = "groq"
    ai_category_provider: str = "groq"

    ai_fallback_enabled: bool = False
    ai_fallback_text_chain: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["openai", "groq", "gemini"])
    ai_fallback_image_chain: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["gemini", "openai"])
    ai_fallback_audio_chain: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["groq", "openai"])
    ai_fallback_category_chain: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["groq", "openai", "gemini"])

    # --- Rate limits (0 = unlimited) ---
    openai_rate_limit_rpm: int = 500
    openai_rate_limit_tpm: int = 90000
    gemini_rate_limit_rpm: int = 60
    gemini_rate_limit_tpm: int = 30000
    groq_rate_limit_rpm: int = 30
    groq_rate_limit_tpm: int = 15000
    deepseek_rate_limit_rpm: int = 60
    deepseek_rate_limit_tpm: int = 60000
    claude_rate_limit_rpm: int = 50
    claude_rate_limit_tpm: int = 40000
    mock_rate_limit_rpm: int = 0
    mock_rate_limit_tpm: int = 0

    # --- Result cache / storage ---
    ai_cache_enabled: bool = True
    ai_cache_ttl_seconds: int = 86400
    storage_timeout_seconds: float = 0.5

    # --- Retrieval + pipeline thresholds ---
    rag_enabled: bool = True
    rag_fast_path_threshold: float = 0.6
    rag_fast_path_min_score: float = 0.4
    rag_revalidation_threshold: float = 0.6
    rag_revalidation_min_score: float = 0.5
    auto_register_threshold: float = 0.9
    min_confidence_threshold: float = 0.5
    rag_synonyms_path: str = ""

    confirmation_ttl_seconds: int = Field(
        default=300,
        validation_alias=AliasChoices("CONFIRMATION_TIMEOUT_SECONDS", "confirmation_ttl_seconds"),
    )

    @field_validator(
        "ai_allowed_providers",
        "ai_fallback_text_chain",
        "ai_fallback_image_chain",
        "ai_fallback_audio_chain",
        "ai_fallback_category_chain",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        return _parse_list_value(value)

    @field_validator(
        "ai_text_provider",
        "ai_image_provider",
        "ai_audio_provider",
        "ai_category_provider",
        mode="before",
    )
    @classmethod
    def _lower_provider(cls, value):
        return str(value or "").strip().lower()

    def rate_limit_for(self, provider: str) -> tuple[int, int]:
        """Return ``(rpm, tpm)`` for *provider*; unknown providers are unlimited."""
        rpm = getattr(self, f"{provider}_rate_limit_rpm", 0)
        tpm = getattr(self, f"{provider}_rate_limit_tpm", 0)
        return int(rpm), int(tpm)

@lru_cache

def get_settings() -> Settings:
    return Settings()
