"""Per-model token estimation.

Each model spec names its tokenizer: a tiktoken encoding (``cl100k_base``,
``o200k_base``) or ``chars`` for backends whose tokenizer is not public, in
which case the ~4 chars/token estimate is used.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

import tiktoken

CHARS_TOKENIZER = "chars"

# Role/formatting overhead per message
MESSAGE_OVERHEAD = 4


@lru_cache(maxsize=8)
def _get_encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def estimate_tokens(text: str, tokenizer: str = "cl100k_base") -> int:
    """Estimate token count for text.

    Args:
        text: Text to estimate tokens for.
        tokenizer: tiktoken encoding name, or ``chars``.

    Returns:
        Estimated token count.
    """
    if not text:
        return 0

    if tokenizer == CHARS_TOKENIZER:
        return (len(text) // 4) + 1

    return len(_get_encoding(tokenizer).encode(text, disallowed_special=()))


def estimate_message_tokens(msg: Dict[str, Any], tokenizer: str = "cl100k_base") -> int:
    """Estimate tokens for a single chat message."""
    tokens = 0

    content = msg.get("content")
    if isinstance(content, str):
        tokens += estimate_tokens(content, tokenizer)
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, dict):
                tokens += estimate_tokens(part.get("text", ""), tokenizer)

    for tc in msg.get("tool_calls") or []:
        func = tc.get("function", {})
        tokens += estimate_tokens(func.get("name", ""), tokenizer)
        tokens += estimate_tokens(str(func.get("arguments", "")), tokenizer)

    return tokens + MESSAGE_OVERHEAD


def estimate_total_tokens(messages: List[Dict[str, Any]], tokenizer: str = "cl100k_base") -> int:
    """Estimate total tokens for all messages."""
    return sum(estimate_message_tokens(m, tokenizer) for m in messages)
