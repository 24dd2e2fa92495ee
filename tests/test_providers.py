"""
Unit tests for the provider adapters and the provider manager.

HTTP adapters run against httpx.MockTransport; the vision adapter gets a
mocked OpenAI client. No test touches the network.
"""

import json
from types import SimpleNamespace
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, RateLimitError

from mathgrader.config import AIProviderName, Settings
from mathgrader.models import ImageInput
from mathgrader.providers import (
    AllProvidersFailed,
    FatalProviderError,
    MathpixProvider,
    ParseError,
    ProviderManager,
    TransientProviderError,
    VisionLLMProvider,
    WolframProvider,
    normalize_expression,
)
from mathgrader.telemetry import Analytics

from fakes import FakeSolveProvider


def mock_client(handler: Callable[[httpx.Request], httpx.Response], base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


# ==============================================================================
# Mathpix
# ==============================================================================


MATHPIX_BODY = {
    "text": "2x + 3 = 11",
    "latex_styled": "2 x+3=11",
    "confidence": 0.93,
    "word_data": [
        {"text": "2x", "confidence": 0.97, "cnt": [{"x": 1, "y": 2}, {"x": 5, "y": 2}, {"x": 5, "y": 9}]},
        {"text": "11"},
    ],
    "detected_alphabets": {"en": True},
}


class TestMathpixProvider:
    """Tests for MathpixProvider."""

    @pytest.mark.asyncio
    async def test_extract_success(self, test_settings: Settings, sample_image: ImageInput) -> None:
        """Test request shape and parsed result."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=MATHPIX_BODY)

        provider = MathpixProvider(test_settings, mock_client(handler, test_settings.mathpix_base_url))
        result = await provider.extract(sample_image)

        assert result.text == "2x + 3 = 11"
        assert result.latex == "2 x+3=11"
        assert result.confidence == 0.93
        assert result.words[0].rect == (1.0, 2.0, 4.0, 7.0)
        assert result.words[1].confidence == 0.8
        assert result.detected_alphabets == {"en": True}

        request = seen[0]
        assert request.url.path.endswith("/text")
        assert request.headers["app_id"] == "test-app"
        payload = json.loads(request.content)
        assert payload["src"] == "data:image/png;base64,aGVsbG8="
        assert payload["formats"] == ["latex_styled", "text"]
        assert payload["data_options"]["include_word_data"] is True

    def test_confidence_rate_fallback(self, test_settings: Settings) -> None:
        provider = MathpixProvider(test_settings)
        result = provider.parse_response(json.dumps({"text": "4 + 5", "confidence_rate": 0.66}))

        assert result.confidence == 0.66

    def test_default_confidence(self, test_settings: Settings) -> None:
        provider = MathpixProvider(test_settings)

        assert provider.parse_response(json.dumps({"text": "4 + 5"})).confidence == 0.8

    def test_error_field_is_parse_error(self, test_settings: Settings) -> None:
        provider = MathpixProvider(test_settings)

        with pytest.raises(ParseError):
            provider.parse_response(json.dumps({"error": "Invalid image"}))

    def test_malformed_body_is_parse_error(self, test_settings: Settings) -> None:
        provider = MathpixProvider(test_settings)

        with pytest.raises(ParseError):
            provider.parse_response('{"text": ["not", "a", "string"]}')

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [(500, TransientProviderError), (429, TransientProviderError), (401, FatalProviderError)],
    )
    async def test_http_errors(
        self, test_settings: Settings, sample_image: ImageInput, status: int, error: type[Exception]
    ) -> None:
        provider = MathpixProvider(
            test_settings,
            mock_client(lambda _: httpx.Response(status, text="nope"), test_settings.mathpix_base_url),
        )

        with pytest.raises(error):
            await provider.extract(sample_image)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, test_settings: Settings, sample_image: ImageInput) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = MathpixProvider(test_settings, mock_client(handler, test_settings.mathpix_base_url))

        with pytest.raises(TransientProviderError):
            await provider.extract(sample_image)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, sample_image: ImageInput) -> None:
        provider = MathpixProvider(Settings(_env_file=None, mathpix_app_id="", mathpix_app_key=""))

        assert not provider.is_available()
        with pytest.raises(FatalProviderError):
            await provider.extract(sample_image)


# ==============================================================================
# Wolfram Alpha
# ==============================================================================


def wolfram_body(*pods: tuple[str, str], success: bool = True) -> dict:
    return {
        "queryresult": {
            "success": success,
            "error": False,
            "pods": [{"title": title, "subpods": [{"plaintext": text}]} for title, text in pods],
        }
    }


class TestNormalizeExpression:
    """Tests for normalize_expression."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("\\frac{3}{4} + \\frac{1}{2} =", "(3)/(4) + (1)/(2)"),
            ("6 \\times 7", "6 * 7"),
            ("12 \\div 4", "12 / 4"),
            ("\\sqrt{49}", "sqrt(49)"),
            ("x^{2} = 16", "x^2 == 16"),
            ("8 × 3 − 2", "8 * 3 - 2"),
        ],
    )
    def test_rewrites(self, raw: str, expected: str) -> None:
        assert normalize_expression(raw) == expected

    def test_equation_kept_without_solve(self) -> None:
        assert normalize_expression("2x + 3 = 11", solve_equation=False) == "2x + 3 = 11"


class TestWolframProvider:
    """Tests for WolframProvider."""

    @pytest.mark.asyncio
    async def test_solve_prefers_result_pod(self, test_settings: Settings) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=wolfram_body(("Input", "2x + 3 == 11"), ("Decimal approximation", "4.0"), ("Result", "x = 4")),
            )

        provider = WolframProvider(test_settings, mock_client(handler, test_settings.wolfram_base_url))
        result = await provider.solve("2x + 3 == 11")

        assert result.result_text == "x = 4"
        assert result.confidence == 0.95
        assert set(result.sections) == {"Input", "Decimal approximation", "Result"}
        params = seen[0].url.params
        assert params["appid"] == "test-wolfram"
        assert params["output"] == "json"
        assert params["input"] == "2x + 3 == 11"

    @pytest.mark.asyncio
    async def test_decimal_approximation_fallback(self, test_settings: Settings) -> None:
        provider = WolframProvider(
            test_settings,
            mock_client(
                lambda _: httpx.Response(200, json=wolfram_body(("Decimal approximation", "0.3333"))),
                test_settings.wolfram_base_url,
            ),
        )

        assert (await provider.solve("1/3")).result_text == "0.3333"

    @pytest.mark.asyncio
    async def test_no_result_pod_is_parse_error(self, test_settings: Settings) -> None:
        provider = WolframProvider(
            test_settings,
            mock_client(
                lambda _: httpx.Response(200, json=wolfram_body(("Input", "1/3"))),
                test_settings.wolfram_base_url,
            ),
        )

        with pytest.raises(ParseError):
            await provider.solve("1/3")

    @pytest.mark.asyncio
    async def test_unsuccessful_query_is_fatal(self, test_settings: Settings) -> None:
        provider = WolframProvider(
            test_settings,
            mock_client(lambda _: httpx.Response(200, json=wolfram_body(success=False)), test_settings.wolfram_base_url),
        )

        with pytest.raises(FatalProviderError):
            await provider.solve("gibberish")

    @pytest.mark.asyncio
    async def test_not_understood_status(self, test_settings: Settings) -> None:
        provider = WolframProvider(
            test_settings,
            mock_client(lambda _: httpx.Response(501, text="not understood"), test_settings.wolfram_base_url),
        )

        with pytest.raises(FatalProviderError):
            await provider.solve("???")

    @pytest.mark.asyncio
    async def test_unexpected_shape(self, test_settings: Settings) -> None:
        provider = WolframProvider(
            test_settings,
            mock_client(lambda _: httpx.Response(200, json={"unexpected": True}), test_settings.wolfram_base_url),
        )

        with pytest.raises(ParseError):
            await provider.solve("1+1")


# ==============================================================================
# Vision LLM
# ==============================================================================


def completion(content: str | None, tokens: int = 42) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=tokens),
    )


def openai_client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    return client


REQUEST = httpx.Request("POST", "https://api.test/v1/chat/completions")


class TestVisionLLMProvider:
    """Tests for VisionLLMProvider."""

    @pytest.mark.asyncio
    async def test_analyze_image(self, test_settings: Settings, sample_image: ImageInput) -> None:
        create = AsyncMock(return_value=completion('{"questions": []}'))
        provider = VisionLLMProvider(AIProviderName.OPENAI, test_settings, openai_client(create))

        response = await provider.analyze_image(sample_image, "Grade this", "system")

        assert response.content == '{"questions": []}'
        assert response.provider == "openai"
        assert response.model == test_settings.openai_model
        assert response.tokens_used == 42

        messages = create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "system"}
        image_part = messages[1]["content"][0]
        assert image_part["image_url"]["url"] == "data:image/png;base64,aGVsbG8="
        assert image_part["image_url"]["detail"] == "high"
        assert create.call_args.kwargs["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_empty_completion_is_parse_error(self, test_settings: Settings) -> None:
        provider = VisionLLMProvider(
            AIProviderName.OPENAI, test_settings, openai_client(AsyncMock(return_value=completion(None)))
        )

        with pytest.raises(ParseError):
            await provider.complete("verify")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, test_settings: Settings) -> None:
        error = RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None)
        provider = VisionLLMProvider(AIProviderName.OPENAI, test_settings, openai_client(AsyncMock(side_effect=error)))

        with pytest.raises(TransientProviderError):
            await provider.complete("verify")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, test_settings: Settings) -> None:
        error = APIConnectionError(request=REQUEST)
        provider = VisionLLMProvider(AIProviderName.OPENAI, test_settings, openai_client(AsyncMock(side_effect=error)))

        with pytest.raises(TransientProviderError):
            await provider.complete("verify")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [(401, FatalProviderError), (503, TransientProviderError)])
    async def test_status_errors(self, test_settings: Settings, status: int, error: type[Exception]) -> None:
        api_error = APIStatusError("failed", response=httpx.Response(status, request=REQUEST), body=None)
        provider = VisionLLMProvider(
            AIProviderName.OPENAI, test_settings, openai_client(AsyncMock(side_effect=api_error))
        )

        with pytest.raises(error):
            await provider.complete("verify")

    @pytest.mark.asyncio
    async def test_missing_key_is_fatal(self, test_settings: Settings) -> None:
        create = AsyncMock()
        provider = VisionLLMProvider(AIProviderName.GROQ, test_settings, openai_client(create))

        assert not provider.is_available()
        with pytest.raises(FatalProviderError):
            await provider.complete("verify")
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_check(self, test_settings: Settings) -> None:
        healthy = VisionLLMProvider(
            AIProviderName.OPENAI, test_settings, openai_client(AsyncMock(return_value=completion("pong")))
        )
        broken = VisionLLMProvider(
            AIProviderName.OPENAI,
            test_settings,
            openai_client(AsyncMock(side_effect=APIConnectionError(request=REQUEST))),
        )

        assert await healthy.health_check() is True
        assert await broken.health_check() is False


# ==============================================================================
# Provider Manager
# ==============================================================================


class TestProviderManager:
    """Tests for fallback and retry in ProviderManager."""

    @pytest.mark.asyncio
    async def test_primary_success(self, make_manager: Callable[..., ProviderManager], sample_image: ImageInput) -> None:
        primary = FakeSolveProvider("openai", images=["ok"])
        secondary = FakeSolveProvider("anthropic", images=["unused"])
        manager = make_manager([primary, secondary])

        outcome = await manager.analyze_image(sample_image, "prompt")

        assert outcome.response.provider == "openai"
        assert outcome.fallbacks_used == 0
        assert secondary.image_calls == 0

    @pytest.mark.asyncio
    async def test_transient_errors_retry_then_fall_back(
        self,
        make_manager: Callable[..., ProviderManager],
        sample_image: ImageInput,
        analytics: Analytics,
    ) -> None:
        primary = FakeSolveProvider("openai", images=[TransientProviderError("openai", "503")])
        secondary = FakeSolveProvider("anthropic", images=["ok"])
        manager = make_manager([primary, secondary])

        outcome = await manager.analyze_image(sample_image, "prompt")

        assert outcome.response.provider == "anthropic"
        assert outcome.fallbacks_used == 1
        assert primary.image_calls == 2  # provider_max_retries in test settings
        events = list(analytics.provider_events)
        assert [e.success for e in events] == [False, False, True]
        assert events[-1].is_fallback

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(
        self, make_manager: Callable[..., ProviderManager], sample_image: ImageInput
    ) -> None:
        primary = FakeSolveProvider("openai", images=[FatalProviderError("openai", "bad key")])
        secondary = FakeSolveProvider("anthropic", images=["ok"])
        manager = make_manager([primary, secondary])

        await manager.analyze_image(sample_image, "prompt")

        assert primary.image_calls == 1

    @pytest.mark.asyncio
    async def test_parse_error_falls_back(self, make_manager: Callable[..., ProviderManager]) -> None:
        primary = FakeSolveProvider("openai", completions=[ParseError("empty")])
        secondary = FakeSolveProvider("anthropic", completions=["ok"])
        manager = make_manager([primary, secondary])

        outcome = await manager.complete("prompt")

        assert outcome.response.content == "ok"
        assert primary.completion_calls == 1

    @pytest.mark.asyncio
    async def test_all_providers_failed(
        self, make_manager: Callable[..., ProviderManager], sample_image: ImageInput
    ) -> None:
        manager = make_manager(
            [
                FakeSolveProvider("openai", images=[FatalProviderError("openai", "bad key")]),
                FakeSolveProvider("anthropic", images=[TransientProviderError("anthropic", "down")]),
            ]
        )

        with pytest.raises(AllProvidersFailed) as exc_info:
            await manager.analyze_image(sample_image, "prompt")

        assert exc_info.value.attempted == ["openai", "anthropic"]
        assert "down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_providers(self, make_manager: Callable[..., ProviderManager], sample_image: ImageInput) -> None:
        manager = make_manager([FakeSolveProvider("openai", available=False)])

        assert manager.available_solve_providers == []
        with pytest.raises(AllProvidersFailed):
            await manager.analyze_image(sample_image, "prompt")

    @pytest.mark.asyncio
    async def test_preferred_provider_goes_first(self, make_manager: Callable[..., ProviderManager]) -> None:
        manager = make_manager(
            [FakeSolveProvider("openai", completions=["a"]), FakeSolveProvider("anthropic", completions=["b"])]
        )

        outcome = await manager.complete("prompt", preferred=AIProviderName.ANTHROPIC)

        assert outcome.response.content == "b"
        assert outcome.fallbacks_used == 0

    def test_backoff_delay(self, make_manager: Callable[..., ProviderManager], test_settings: Settings) -> None:
        """Test exponential backoff is capped."""
        manager = make_manager([], settings=test_settings.model_copy(update={"retry_base_delay_seconds": 1.0}))

        assert [manager._calculate_delay(a) for a in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    @pytest.mark.asyncio
    async def test_backoff_sleeps_between_retries(self, test_settings: Settings, sample_image: ImageInput) -> None:
        delays: list[float] = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        settings = test_settings.model_copy(
            update={
                "retry_base_delay_seconds": 0.5,
                "provider_max_retries": 3,
                "enable_ocr": False,
                "enable_symbolic_verification": False,
            }
        )
        manager = ProviderManager(
            settings,
            solve_providers=[FakeSolveProvider("openai", images=[TransientProviderError("openai", "503")])],
            sleep=record_sleep,
        )

        with pytest.raises(AllProvidersFailed):
            await manager.analyze_image(sample_image, "prompt")

        assert delays == [0.5, 1.0]

    def test_disabled_adapters_are_hidden(self, make_manager: Callable[..., ProviderManager]) -> None:
        manager = make_manager([FakeSolveProvider()])

        assert manager.ocr is None
        assert manager.symbolic is None
