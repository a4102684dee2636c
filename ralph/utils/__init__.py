"""Utility helpers."""

from ralph.utils.tokens import estimate_message_tokens, estimate_tokens, estimate_total_tokens

__all__ = ["estimate_tokens", "estimate_message_tokens", "estimate_total_tokens"]
