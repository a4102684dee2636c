"""Configuration module - pydantic models and TOML loading."""

from ralph.config.loader import find_config_file, load_config
from ralph.config.models import (
    CompactionKind,
    CompletionConfig,
    CompletionGuard,
    ContextConfig,
    EscalationConfig,
    LoopConfig,
    OutputConfig,
    OutputMode,
    RalphConfig,
    RetryConfig,
)

__all__ = [
    "CompactionKind",
    "CompletionConfig",
    "CompletionGuard",
    "ContextConfig",
    "EscalationConfig",
    "LoopConfig",
    "OutputConfig",
    "OutputMode",
    "RalphConfig",
    "RetryConfig",
    "find_config_file",
    "load_config",
]
