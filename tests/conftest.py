"""
Pytest configuration and fixtures.

Provides common test fixtures for all test modules: settings with test
credentials, sample model responses and a provider manager factory over
the fakes in fakes.py.
"""

from typing import Callable

import pytest

from mathgrader.config import Settings
from mathgrader.models import GradingRequest, ImageInput, OcrResult
from mathgrader.providers.base import OcrProvider, SolveProvider, SymbolicProvider
from mathgrader.providers.manager import ProviderManager
from mathgrader.telemetry import Analytics, CostTracker, ReviewTracker

from fakes import grading_json, no_sleep, question

# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with fake credentials and no backoff delay."""
    return Settings(
        _env_file=None,
        openai_api_key="test-openai-key",
        anthropic_api_key="test-anthropic-key",
        groq_api_key="",
        mathpix_app_id="test-app",
        mathpix_app_key="test-key",
        wolfram_app_id="test-wolfram",
        retry_base_delay_seconds=0.0,
        provider_max_retries=2,
        pipeline_timeout_seconds=5.0,
    )


# ==============================================================================
# Sample Response Fixtures
# ==============================================================================


@pytest.fixture
def sample_grading_response() -> str:
    """Three questions: simple correct, moderate correct, complex wrong."""
    return grading_json(
        question(1, "4 + 5 =", "9", "9", True),
        question(2, "3/4 + 1/2 =", "5/4", "1.25", True),
        question(3, "2x + 3 = 11", "x = 4", "x = 5", False),
    )


@pytest.fixture
def sample_image() -> ImageInput:
    return ImageInput(data="aGVsbG8=", mime_type="image/png")


@pytest.fixture
def sample_request(sample_image: ImageInput) -> GradingRequest:
    return GradingRequest(submission_id="sub-1", image=sample_image)


@pytest.fixture
def sample_ocr() -> OcrResult:
    return OcrResult(text="4 + 5 = 9\n3/4 + 1/2 = 1.25\n2x + 3 = 11 x = 5", confidence=0.92)


# ==============================================================================
# Service Fixtures
# ==============================================================================


@pytest.fixture
def analytics() -> Analytics:
    return Analytics()


@pytest.fixture
def cost_tracker(analytics: Analytics) -> CostTracker:
    return CostTracker(analytics=analytics)


@pytest.fixture
def review_tracker() -> ReviewTracker:
    return ReviewTracker()


@pytest.fixture
def make_manager(test_settings: Settings, analytics: Analytics) -> Callable[..., ProviderManager]:
    """Factory for a ProviderManager over fake providers."""

    def factory(
        solve: list[SolveProvider],
        ocr: OcrProvider | None = None,
        symbolic: SymbolicProvider | None = None,
        settings: Settings | None = None,
    ) -> ProviderManager:
        base = settings or test_settings
        # Unset adapters stay off instead of falling back to real HTTP clients
        base = base.model_copy(
            update={"enable_ocr": ocr is not None, "enable_symbolic_verification": symbolic is not None}
        )
        return ProviderManager(
            base,
            solve_providers=solve,
            ocr_provider=ocr,
            symbolic_provider=symbolic,
            analytics=analytics,
            sleep=no_sleep,
        )

    return factory
