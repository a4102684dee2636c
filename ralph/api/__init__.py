"""API module - retry with backoff for agent calls."""

from ralph.api.retry import RetryHandler, RetryState

__all__ = ["RetryHandler", "RetryState"]
