"""Iteration records and loop outcomes.

Every planned way for a loop to end is an ordinary return value; callers
branch on the outcome type (or ``kind`` / ``exit_code``) instead of
handling exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_MAX_ITERATIONS = 3
EXIT_BUDGET_EXCEEDED = 4
EXIT_CONTEXT_EXHAUSTED = 5
EXIT_CONFIG_ERROR = 6


class LoopState(str, Enum):
    """States of the loop controller."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXCEEDED = "budget_exceeded"
    CONTEXT_EXHAUSTED = "context_exhausted"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (LoopState.IDLE, LoopState.RUNNING)


@dataclass(frozen=True)
class IterationRecord:
    """One pass of the loop; immutable once created."""

    index: int
    prompt_sent: str
    response_received: str
    cost_delta: float
    completion_detected: bool
    model_id: str = ""
    cumulative_cost: float = 0.0
    attempts: int = 1


class LoopOutcome:
    """Base for the terminal outcomes of a loop invocation."""

    state: ClassVar[LoopState]
    exit_code: ClassVar[int]

    iteration_count: int
    spend: float

    @property
    def kind(self) -> str:
        return self.state.value

    @property
    def is_success(self) -> bool:
        return self.state == LoopState.COMPLETED


@dataclass(frozen=True)
class Completed(LoopOutcome):
    state: ClassVar[LoopState] = LoopState.COMPLETED
    exit_code: ClassVar[int] = EXIT_COMPLETED

    response: str
    iteration_count: int
    spend: float = 0.0


@dataclass(frozen=True)
class BudgetExceeded(LoopOutcome):
    state: ClassVar[LoopState] = LoopState.BUDGET_EXCEEDED
    exit_code: ClassVar[int] = EXIT_BUDGET_EXCEEDED

    iteration_count: int
    spend: float
    ceiling: Optional[float] = None


@dataclass(frozen=True)
class ContextExhausted(LoopOutcome):
    state: ClassVar[LoopState] = LoopState.CONTEXT_EXHAUSTED
    exit_code: ClassVar[int] = EXIT_CONTEXT_EXHAUSTED

    iteration_count: int
    spend: float = 0.0
    tokens_used: int = 0
    capacity: int = 0


@dataclass(frozen=True)
class MaxIterationsReached(LoopOutcome):
    state: ClassVar[LoopState] = LoopState.MAX_ITERATIONS_REACHED
    exit_code: ClassVar[int] = EXIT_MAX_ITERATIONS

    iteration_count: int
    spend: float = 0.0


@dataclass(frozen=True)
class Failed(LoopOutcome):
    state: ClassVar[LoopState] = LoopState.FAILED
    exit_code: ClassVar[int] = EXIT_FAILED

    error: Exception
    iteration_count: int = 0
    spend: float = 0.0
