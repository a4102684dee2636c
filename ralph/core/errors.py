"""Exception taxonomy for the Ralph loop.

Planned terminal outcomes (budget, context, iteration cap) are *not*
exceptions; see :mod:`ralph.core.outcome`.  Only infrastructure failures
are raised.
"""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all errors raised by ralph."""


class ProviderError(RalphError):
    """Transport or model-provider failure during an agent call.

    Attributes:
        code: Short machine-readable error code (``timeout``, ``rate_limit``...).
        retryable: Whether the loop may retry the call with backoff.
    """

    def __init__(self, message: str, code: str = "unknown", retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable


class ModelIncompatible(RalphError):
    """A model switch cannot carry the existing conversation forward."""

    def __init__(self, message: str, source_model: str = "", target_model: str = ""):
        super().__init__(message)
        self.source_model = source_model
        self.target_model = target_model


class UnknownModelError(RalphError, ValueError):
    """A model identifier could not be resolved to a configured backend."""


class ConfigError(RalphError):
    """Invalid configuration file or values."""
