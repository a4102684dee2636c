"""Pydantic models for ralph configuration."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ralph.llm.registry import DEFAULT_MODEL, ModelRegistry, ModelSpec


class CompletionGuard(str, Enum):
    """How strictly the completion marker must appear in a response."""

    SUBSTRING = "substring"
    FINAL_LINE = "final_line"
    DELIMITED = "delimited"


class CompactionKind(str, Enum):
    """Compaction strategy used when the context window fills up."""

    PRUNE = "prune"
    TRIM = "trim"
    SUMMARIZE = "summarize"
    CHAIN = "chain"


class OutputMode(str, Enum):
    """Output mode for progress events."""

    HUMAN = "human"
    JSON = "json"


class LoopConfig(BaseModel):
    """Immutable per-invocation loop configuration."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    completion_marker: str = Field(min_length=1)
    max_iterations: int = Field(default=50, gt=0)
    cost_ceiling: Optional[float] = Field(default=None, ge=0)
    model_id: Optional[str] = None


class LoopDefaults(BaseModel):
    """Defaults for ``LoopConfig`` read from the ``[loop]`` config section."""

    max_iterations: int = Field(default=50, gt=0, description="Maximum iterations")
    cost_ceiling: Optional[float] = Field(default=None, ge=0, description="USD ceiling")
    completion_marker: Optional[str] = Field(default=None, description="Completion marker")


class RetryConfig(BaseModel):
    """Configuration for retrying failed agent calls."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per iteration")
    base_delay: float = Field(default=1.0, ge=0, description="Base delay in seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Maximum delay in seconds")
    jitter: bool = Field(default=True, description="Randomize delays by +/-10%")


class CompletionConfig(BaseModel):
    """Configuration for completion detection."""

    guard: CompletionGuard = Field(default=CompletionGuard.SUBSTRING)
    open_delimiter: str = Field(default="<promise>", min_length=1)
    close_delimiter: str = Field(default="</promise>", min_length=1)


class ContextConfig(BaseModel):
    """Configuration for context-window governance."""

    threshold: float = Field(
        default=0.85, gt=0, le=1, description="Fraction of usable context that triggers compaction"
    )
    strategy: CompactionKind = Field(default=CompactionKind.CHAIN)
    protect_last_turns: int = Field(default=2, ge=0, description="Recent user turns never pruned")
    summary_max_tokens: int = Field(default=4096, gt=0)


class OutputConfig(BaseModel):
    """Configuration for progress output."""

    mode: OutputMode = Field(default=OutputMode.HUMAN, description="Output mode")
    colors: bool = Field(default=True, description="Enable colored output")
    log_file: Optional[Path] = Field(default=None, description="Append JSONL events here")


class EscalationConfig(BaseModel):
    """Switch once to a stronger model after a number of iterations."""

    model: str = Field(min_length=1)
    after_iterations: int = Field(gt=0)


class RalphConfig(BaseModel):
    """Main configuration for ralph."""

    default_model: str = Field(default=DEFAULT_MODEL, description="Model id or alias")
    autonomous: bool = Field(default=False, description="Run without interactive approvals")
    timeout: float = Field(default=300.0, gt=0, description="Timeout per agent call in seconds")
    system_prompt: Optional[str] = Field(default=None, description="Override the system prompt")

    loop: LoopDefaults = Field(default_factory=LoopDefaults)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    escalation: Optional[EscalationConfig] = None
    models: List[ModelSpec] = Field(default_factory=list)

    def build_registry(self) -> ModelRegistry:
        """Build the model registry, validating the default model."""
        return ModelRegistry(list(self.models), default=self.default_model)

    def loop_config(
        self,
        prompt: str,
        completion_marker: Optional[str] = None,
        max_iterations: Optional[int] = None,
        cost_ceiling: Optional[float] = None,
        model_id: Optional[str] = None,
    ) -> LoopConfig:
        """Build a ``LoopConfig``, falling back to the ``[loop]`` defaults."""
        marker = completion_marker or self.loop.completion_marker
        if not marker:
            raise ValueError("A completion marker is required")
        return LoopConfig(
            prompt=prompt,
            completion_marker=marker,
            max_iterations=max_iterations or self.loop.max_iterations,
            cost_ceiling=cost_ceiling if cost_ceiling is not None else self.loop.cost_ceiling,
            model_id=model_id,
        )
