"""
Configuration management for the math grading engine.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
All configuration is validated at startup to fail fast on misconfiguration.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class AIProviderName(str, Enum):
    """Vision-capable language model providers that can solve a worksheet."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROQ = "groq"


DEFAULT_FALLBACK_ORDER: tuple[AIProviderName, ...] = (
    AIProviderName.OPENAI,
    AIProviderName.ANTHROPIC,
    AIProviderName.GROQ,
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provider credentials are optional: a provider without a key is simply
    left out of the fallback chain.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Vision Solve Providers (OpenAI-compatible chat completion endpoints)
    # ==========================================================================
    openai_api_key: str = Field(default="", description="API key for OpenAI")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    openai_model: str = Field(default="gpt-4o")

    anthropic_api_key: str = Field(default="", description="API key for Anthropic")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1")
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022")

    groq_api_key: str = Field(default="", description="API key for Groq")
    groq_base_url: str = Field(default="https://api.groq.com/openai/v1")
    groq_model: str = Field(default="llama-3.2-90b-vision-preview")

    ai_fallback_order: Annotated[tuple[AIProviderName, ...], NoDecode] = Field(
        default=DEFAULT_FALLBACK_ORDER,
        description="Order in which solve providers are tried (comma separated in env)",
    )

    ai_provider_primary: AIProviderName | None = Field(
        default=None,
        description="Provider moved to the front of the fallback order",
    )

    llm_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Temperature for LLM generation (0.0 = deterministic)",
    )

    llm_max_tokens: int = Field(default=4096, ge=256, le=32768)

    # ==========================================================================
    # OCR and Symbolic Verification Providers
    # ==========================================================================
    mathpix_app_id: str = Field(default="")
    mathpix_app_key: str = Field(default="")
    mathpix_base_url: str = Field(default="https://api.mathpix.com/v3")

    wolfram_app_id: str = Field(default="")
    wolfram_base_url: str = Field(default="https://api.wolframalpha.com/v2")

    # ==========================================================================
    # Feature Flags
    # ==========================================================================
    enable_ocr: bool = Field(default=True, description="Run OCR before solving")
    enable_verification: bool = Field(default=True)
    enable_symbolic_verification: bool = Field(default=True)
    track_costs: bool = Field(default=True)
    enable_analytics: bool = Field(default=True)

    # ==========================================================================
    # Timeouts and Retries
    # ==========================================================================
    provider_timeout_seconds: float = Field(default=10.0, gt=0.0, le=300.0)
    solve_timeout_seconds: float = Field(default=60.0, gt=0.0, le=600.0)
    pipeline_timeout_seconds: float = Field(default=30.0, gt=0.0, le=900.0)
    provider_max_retries: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    batch_max_attempts: int = Field(default=2, ge=1, le=5)

    # ==========================================================================
    # Confidence Configuration
    # ==========================================================================
    ocr_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    solve_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    verify_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    ocr_review_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    readability_review_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    medium_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    low_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    answer_tolerance: float = Field(default=1e-4, gt=0.0)

    # ==========================================================================
    # Token Costs
    # ==========================================================================
    submission_token_cost: int = Field(default=1, ge=0)
    feedback_token_cost: int = Field(default=1, ge=0)
    bulk_discount_threshold: int = Field(default=10, ge=1)
    bulk_discount_rate: float = Field(default=0.1, ge=0.0, lt=1.0)
    signup_bonus_tokens: int = Field(default=50, ge=0)

    # ==========================================================================
    # Review Tracking and Logging
    # ==========================================================================
    review_window_minutes: int = Field(default=60, ge=1)
    review_rate_alert_threshold: float = Field(default=0.15, ge=0.0, le=1.0)
    log_level: str = Field(default="INFO")

    @field_validator("ai_fallback_order", mode="before")
    @classmethod
    def parse_fallback_order(cls, v: Any) -> Any:
        """Accept a comma separated string and drop unknown provider names."""
        if isinstance(v, str):
            v = [part.strip().lower() for part in v.split(",")]
        if isinstance(v, (list, tuple)):
            known = {p.value for p in AIProviderName}
            valid = [str(getattr(p, "value", p)) for p in v if str(getattr(p, "value", p)) in known]
            return tuple(valid) if valid else DEFAULT_FALLBACK_ORDER
        return v

    @field_validator("openai_base_url", "anthropic_base_url", "groq_base_url", "mathpix_base_url", "wolfram_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def apply_primary_provider(self) -> "Settings":
        """Move the primary provider to the front of the fallback order."""
        if self.ai_provider_primary is not None:
            rest = tuple(p for p in self.ai_fallback_order if p != self.ai_provider_primary)
            object.__setattr__(self, "ai_fallback_order", (self.ai_provider_primary, *rest))
        return self

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        if self.low_confidence_threshold > self.medium_confidence_threshold:
            raise ValueError("low_confidence_threshold cannot exceed medium_confidence_threshold")
        return self

    def provider_credentials(self, provider: AIProviderName) -> tuple[str, str, str]:
        """Return (api_key, base_url, model) for a solve provider."""
        prefix = provider.value
        return (
            getattr(self, f"{prefix}_api_key"),
            getattr(self, f"{prefix}_base_url"),
            getattr(self, f"{prefix}_model"),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
