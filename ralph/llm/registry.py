"""Typed model references and the model registry.

Model identifiers are resolved once, at construction, into a provider-keyed
variant carrying the per-model metadata the loop needs (context window,
pricing, transcript format, tokenizer):

- ``openai/gpt-4o`` -> :class:`OpenAIModel`
- ``anthropic/claude-sonnet-4-5`` -> :class:`AnthropicModel`
- ``chutes/zai-org/GLM-4.7-TEE`` -> :class:`ChutesModel`
- ``openrouter/qwen/qwen3-coder`` -> :class:`OpenRouterModel`

Everything after the first ``/`` is the provider's own model name, so
provider model names may themselves contain slashes.  Named aliases
(``fast``, ``strong``...) registered from configuration take precedence over
parsing.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Annotated, ClassVar, Dict, Iterator, List, Literal, Optional, Union

import tiktoken
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ralph.core.errors import ConfigError, UnknownModelError
from ralph.utils.tokens import CHARS_TOKENIZER

DEFAULT_MODEL = "chutes/zai-org/GLM-4.7-TEE"


class TranscriptFormat(str, Enum):
    """Message/tool-call transcript shape a backend accepts."""

    OPENAI_CHAT = "openai-chat"
    ANTHROPIC_MESSAGES = "anthropic-messages"


class BaseModelSpec(BaseModel):
    """Fields shared by every provider variant.

    Attributes:
        model: Provider-side model name.
        name: Optional alias used to refer to this entry (``fast``, ``strong``).
        context_window: Total context window size in tokens.
        output_reserve: Tokens reserved for the model's output.
        max_tokens: Maximum output tokens to request per call.
        temperature: Sampling temperature, ``None`` to omit it.
        input_cost_per_mtok: USD per million prompt tokens.
        output_cost_per_mtok: USD per million completion tokens.
        transcript_format: Transcript shape this backend accepts.
        supports_tools: Whether tool-call messages may appear in history.
        tokenizer: tiktoken encoding name, or ``chars`` for the
            four-characters-per-token estimate.
        base_url: Override for the provider's default endpoint.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_base_url: ClassVar[str] = ""
    api_key_env_vars: ClassVar[tuple[str, ...]] = ()

    model: str = Field(min_length=1)
    name: Optional[str] = None
    context_window: int = Field(default=131_072, gt=0)
    output_reserve: int = Field(default=16_384, ge=0)
    max_tokens: int = Field(default=16_384, gt=0)
    temperature: Optional[float] = 0.0
    input_cost_per_mtok: float = Field(default=3.0, ge=0)
    output_cost_per_mtok: float = Field(default=15.0, ge=0)
    transcript_format: TranscriptFormat = TranscriptFormat.OPENAI_CHAT
    supports_tools: bool = True
    tokenizer: str = "cl100k_base"
    base_url: Optional[str] = None

    @field_validator("tokenizer")
    @classmethod
    def _check_tokenizer(cls, value: str) -> str:
        if value != CHARS_TOKENIZER and value not in tiktoken.list_encoding_names():
            known = ", ".join([CHARS_TOKENIZER, *sorted(tiktoken.list_encoding_names())])
            raise ValueError(f"Unknown tokenizer {value!r}; expected one of: {known}")
        return value

    @model_validator(mode="after")
    def _check_reserve(self) -> "BaseModelSpec":
        if self.output_reserve >= self.context_window:
            raise ValueError(
                f"output_reserve ({self.output_reserve}) must be smaller than "
                f"context_window ({self.context_window})"
            )
        return self

    @property
    def id(self) -> str:
        """Canonical ``provider/model`` identifier."""
        return f"{self.provider}/{self.model}"  # type: ignore[attr-defined]

    @property
    def usable_context(self) -> int:
        """Context window minus output reserve."""
        return self.context_window - self.output_reserve

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD of a call with the given token usage."""
        return (
            max(0, input_tokens) * self.input_cost_per_mtok / 1_000_000
            + max(0, output_tokens) * self.output_cost_per_mtok / 1_000_000
        )

    def resolve_base_url(self) -> str:
        return (self.base_url or self.default_base_url).rstrip("/")

    def get_api_key(self) -> str:
        """Read the API key for this provider from the environment."""
        for var in self.api_key_env_vars:
            key = os.environ.get(var)
            if key:
                return key
        raise ConfigError(
            f"No API key found for provider {self.provider!r}. "  # type: ignore[attr-defined]
            f"Set one of: {list(self.api_key_env_vars)}"
        )

    def extra_headers(self) -> Dict[str, str]:
        """Provider-specific HTTP headers."""
        return {}


class OpenAIModel(BaseModelSpec):
    default_base_url: ClassVar[str] = "https://api.openai.com/v1"
    api_key_env_vars: ClassVar[tuple[str, ...]] = ("OPENAI_API_KEY",)

    provider: Literal["openai"] = "openai"
    organization: Optional[str] = None
    tokenizer: str = "o200k_base"

    def extra_headers(self) -> Dict[str, str]:
        if self.organization:
            return {"OpenAI-Organization": self.organization}
        return {}


class AnthropicModel(BaseModelSpec):
    """Anthropic through its OpenAI-compatible chat completions endpoint."""

    default_base_url: ClassVar[str] = "https://api.anthropic.com/v1"
    api_key_env_vars: ClassVar[tuple[str, ...]] = ("ANTHROPIC_API_KEY",)

    provider: Literal["anthropic"] = "anthropic"
    context_window: int = Field(default=200_000, gt=0)
    output_reserve: int = Field(default=32_000, ge=0)
    # Tool calls are recorded as content blocks, not OpenAI tool_calls.
    transcript_format: TranscriptFormat = TranscriptFormat.ANTHROPIC_MESSAGES
    # No public tiktoken encoding for Claude models.
    tokenizer: str = "chars"
    beta: Optional[str] = None

    def extra_headers(self) -> Dict[str, str]:
        if self.beta:
            return {"anthropic-beta": self.beta}
        return {}


class ChutesModel(BaseModelSpec):
    default_base_url: ClassVar[str] = "https://llm.chutes.ai/v1"
    api_key_env_vars: ClassVar[tuple[str, ...]] = ("CHUTES_API_TOKEN", "CHUTES_API_KEY")

    provider: Literal["chutes"] = "chutes"


class OpenRouterModel(BaseModelSpec):
    default_base_url: ClassVar[str] = "https://openrouter.ai/api/v1"
    api_key_env_vars: ClassVar[tuple[str, ...]] = ("OPENROUTER_API_KEY",)

    provider: Literal["openrouter"] = "openrouter"
    site_url: Optional[str] = None
    app_name: Optional[str] = None

    def extra_headers(self) -> Dict[str, str]:
        headers = {}
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers


ModelSpec = Annotated[
    Union[OpenAIModel, AnthropicModel, ChutesModel, OpenRouterModel],
    Field(discriminator="provider"),
]

PROVIDERS: Dict[str, type[BaseModelSpec]] = {
    "openai": OpenAIModel,
    "anthropic": AnthropicModel,
    "chutes": ChutesModel,
    "openrouter": OpenRouterModel,
}


def parse_model_id(model_id: str) -> BaseModelSpec:
    """Parse a ``provider/model`` string into a typed model spec.

    Raises:
        UnknownModelError: If the identifier is malformed or the provider
            is not one of :data:`PROVIDERS`.
    """
    provider, sep, model = model_id.strip().partition("/")
    if not sep or not provider or not model:
        raise UnknownModelError(
            f"Model id must look like 'provider/model', got {model_id!r}"
        )
    spec_cls = PROVIDERS.get(provider.lower())
    if spec_cls is None:
        raise UnknownModelError(
            f"Unknown provider {provider!r} in model id {model_id!r}. "
            f"Known providers: {sorted(PROVIDERS)}"
        )
    return spec_cls(model=model)


class ModelRegistry:
    """Resolves model identifiers to configured specs.

    Usage::

        registry = ModelRegistry(config.models, default="strong")
        spec = registry.resolve("openai/gpt-4o")
        spec = registry.resolve("fast")
        spec = registry.resolve(None)  # the default
    """

    def __init__(
        self,
        models: Optional[List[BaseModelSpec]] = None,
        default: str = DEFAULT_MODEL,
    ):
        self._by_id: Dict[str, BaseModelSpec] = {}
        self._by_name: Dict[str, BaseModelSpec] = {}
        for spec in models or []:
            self.register(spec)
        self._default = default
        # Fail at construction rather than at first call.
        self.resolve(default)

    def register(self, spec: BaseModelSpec) -> None:
        self._by_id[spec.id] = spec
        if spec.name:
            self._by_name[spec.name] = spec

    @property
    def default(self) -> BaseModelSpec:
        return self.resolve(self._default)

    def resolve(self, model_id: Optional[str]) -> BaseModelSpec:
        """Resolve an alias, a registered id, or a ``provider/model`` string."""
        if model_id is None:
            model_id = self._default
        if model_id in self._by_name:
            return self._by_name[model_id]
        if model_id in self._by_id:
            return self._by_id[model_id]
        spec = parse_model_id(model_id)
        return self._by_id.get(spec.id, spec)

    def __iter__(self) -> Iterator[BaseModelSpec]:
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)
