"""LLM client using httpx against OpenAI-compatible chat completions.

Every supported provider exposes ``POST {base_url}/chat/completions``; the
model spec supplies the endpoint, headers and per-token pricing used to
cost each call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ralph.core.errors import ProviderError
from ralph.llm.registry import BaseModelSpec

logger = logging.getLogger(__name__)

RETRYABLE_CODES = frozenset(
    {"timeout", "rate_limit", "server_error", "connection_error", "empty_response"}
)


class LLMError(ProviderError):
    """LLM API error.

    Retryability is derived from ``code`` unless given explicitly.
    """

    def __init__(self, message: str, code: str = "unknown", retryable: Optional[bool] = None):
        if retryable is None:
            retryable = code in RETRYABLE_CODES
        super().__init__(message, code=code, retryable=retryable)


class ContextWindowExceeded(LLMError):
    """Raised when the request exceeds the model's context window."""

    def __init__(self, message: str):
        super().__init__(message, code="context_window_exceeded", retryable=False)


@dataclass
class LLMResponse:
    """Response from the LLM."""

    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    model: str = ""
    finish_reason: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def is_empty(self) -> bool:
        """True when the model produced neither text nor tool calls."""
        return not (self.text and self.text.strip()) and not self.tool_calls


CONTEXT_ERROR_KEYWORDS = (
    "context_length_exceeded",
    "context window",
    "maximum context length",
    "context length",
    "too many tokens",
    "input is too long",
    "prompt is too long",
)


def _is_context_window_error(status_code: int, error_msg: str) -> bool:
    lowered = error_msg.lower()
    return status_code in (400, 413) and any(kw in lowered for kw in CONTEXT_ERROR_KEYWORDS)


class LLMClient:
    """Blocking chat-completions client bound to one model spec."""

    def __init__(
        self,
        spec: BaseModelSpec,
        api_key: Optional[str] = None,
        timeout: Optional[float] = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.spec = spec
        api_key = api_key or spec.get_api_key()

        self._total_cost = 0.0

        self._client = httpx.Client(
            base_url=spec.resolve_base_url(),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                **spec.extra_headers(),
            },
            timeout=httpx.Timeout(timeout=timeout, connect=30.0),
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self.spec.model

    def _raise_http_error(self, status_code: int, error_msg: str) -> None:
        """Map HTTP status to the appropriate LLMError and raise."""
        if _is_context_window_error(status_code, error_msg):
            raise ContextWindowExceeded(error_msg)
        if status_code in (401, 403):
            raise LLMError(error_msg, code="authentication_error")
        if status_code == 429:
            raise LLMError(error_msg, code="rate_limit")
        if status_code >= 500:
            raise LLMError(error_msg, code="server_error")
        raise LLMError(f"HTTP {status_code}: {error_msg}", code="api_error")

    def chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send a chat request and return the parsed, costed response."""
        payload: Dict[str, Any] = {
            "model": self.spec.model,
            "messages": messages,
            "max_tokens": max_tokens or self.spec.max_tokens,
        }
        if self.spec.temperature is not None:
            payload["temperature"] = self.spec.temperature

        try:
            response = self._client.post("/chat/completions", json=payload)

            if response.status_code != 200:
                error_msg = response.text
                try:
                    error_msg = response.json().get("error", {}).get("message", error_msg)
                except (json.JSONDecodeError, AttributeError):
                    pass
                self._raise_http_error(response.status_code, error_msg)

            data = response.json()

        except LLMError:
            raise
        except httpx.TimeoutException as e:
            raise LLMError(f"Request timed out: {e}", code="timeout") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Connection error: {e}", code="connection_error") from e
        except httpx.HTTPError as e:
            raise LLMError(f"HTTP error: {e}", code="api_error") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Malformed response body: {e}", code="server_error") from e

        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> LLMResponse:
        result = LLMResponse(model=data.get("model", self.spec.model))

        usage = data.get("usage") or {}
        result.input_tokens = usage.get("prompt_tokens", 0) or 0
        result.output_tokens = usage.get("completion_tokens", 0) or 0
        result.cost = self.spec.cost(result.input_tokens, result.output_tokens)

        choices = data.get("choices") or []
        if choices:
            choice = choices[0]
            message = choice.get("message") or {}
            result.finish_reason = choice.get("finish_reason", "") or ""
            result.text = message.get("content", "") or ""
            result.tool_calls = list(message.get("tool_calls") or [])

        # Usage is billed even when the reply is unusable.
        self._total_cost += result.cost

        if result.is_empty:
            logger.warning(
                "Empty response from model %s (finish_reason=%r)",
                self.spec.model,
                result.finish_reason,
            )
            raise LLMError(
                f"Empty response: model '{self.spec.model}' produced no text and no tool calls",
                code="empty_response",
            )

        return result

    @property
    def total_cost(self) -> float:
        return self._total_cost

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
