"""External service adapters: OCR, vision solve and symbolic verification."""

from mathgrader.providers.base import (
    FatalProviderError,
    OcrProvider,
    ParseError,
    ProviderError,
    SolveProvider,
    SymbolicProvider,
    TransientProviderError,
)
from mathgrader.providers.llm import VisionLLMProvider
from mathgrader.providers.manager import AllProvidersFailed, ProviderManager, SolveOutcome
from mathgrader.providers.mathpix import MathpixProvider
from mathgrader.providers.wolfram import WolframProvider, normalize_expression

__all__ = [
    "AllProvidersFailed",
    "FatalProviderError",
    "MathpixProvider",
    "OcrProvider",
    "ParseError",
    "ProviderError",
    "ProviderManager",
    "SolveOutcome",
    "SolveProvider",
    "SymbolicProvider",
    "TransientProviderError",
    "VisionLLMProvider",
    "WolframProvider",
    "normalize_expression",
]
