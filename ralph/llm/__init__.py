"""LLM module - httpx chat client and the typed model registry."""

from .client import ContextWindowExceeded, LLMClient, LLMError, LLMResponse
from .registry import (
    DEFAULT_MODEL,
    AnthropicModel,
    BaseModelSpec,
    ChutesModel,
    ModelRegistry,
    ModelSpec,
    OpenAIModel,
    OpenRouterModel,
    TranscriptFormat,
    parse_model_id,
)

__all__ = [
    "LLMClient",
    "LLMResponse",
    "LLMError",
    "ContextWindowExceeded",
    "DEFAULT_MODEL",
    "BaseModelSpec",
    "ModelSpec",
    "OpenAIModel",
    "AnthropicModel",
    "ChutesModel",
    "OpenRouterModel",
    "ModelRegistry",
    "TranscriptFormat",
    "parse_model_id",
]
