"""
Unit tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from mathgrader.config import DEFAULT_FALLBACK_ORDER, AIProviderName, Settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.ai_fallback_order == DEFAULT_FALLBACK_ORDER
        assert settings.pipeline_timeout_seconds == 30.0
        assert settings.batch_max_attempts == 2
        assert (settings.ocr_weight, settings.solve_weight, settings.verify_weight) == (0.3, 0.4, 0.3)

    def test_fallback_order_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AI_FALLBACK_ORDER", "groq, OpenAI, bogus")

        settings = Settings(_env_file=None)

        assert settings.ai_fallback_order == (AIProviderName.GROQ, AIProviderName.OPENAI)

    def test_unknown_fallback_order_uses_default(self) -> None:
        assert Settings(_env_file=None, ai_fallback_order="nope").ai_fallback_order == DEFAULT_FALLBACK_ORDER

    def test_primary_provider_goes_first(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AI_PROVIDER_PRIMARY", "anthropic")

        settings = Settings(_env_file=None)

        assert settings.ai_fallback_order == (
            AIProviderName.ANTHROPIC,
            AIProviderName.OPENAI,
            AIProviderName.GROQ,
        )

    def test_base_url_trailing_slash(self) -> None:
        settings = Settings(_env_file=None, mathpix_base_url="https://api.mathpix.com/v3/")

        assert settings.mathpix_base_url == "https://api.mathpix.com/v3"

    def test_log_level_is_uppercased(self) -> None:
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_threshold_order_enforced(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, low_confidence_threshold=0.8, medium_confidence_threshold=0.6)

    def test_provider_credentials(self) -> None:
        settings = Settings(_env_file=None, groq_api_key="gsk-test")

        api_key, base_url, model = settings.provider_credentials(AIProviderName.GROQ)

        assert api_key == "gsk-test"
        assert base_url == "https://api.groq.com/openai/v1"
        assert model == settings.groq_model
