"""Model-switch policies consulted by the loop before each call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from ralph.core.outcome import IterationRecord


@dataclass(frozen=True)
class LoopProgress:
    """Read-only view of the loop handed to switch policies."""

    iteration_count: int
    spend: float
    active_model: str
    last_record: Optional[IterationRecord] = None


SwitchPolicy = Callable[[LoopProgress], Optional[str]]


class EscalationPolicy:
    """Switch once to ``model_id`` after ``after_iterations`` unfinished iterations.

    The cheap/default model does the early iterations; a loop that has not
    converged by then is handed to a stronger model.
    """

    def __init__(self, model_id: str, after_iterations: int):
        if after_iterations < 1:
            raise ValueError("after_iterations must be positive")
        self.model_id = model_id
        self.after_iterations = after_iterations
        self._fired = False

    def __call__(self, progress: LoopProgress) -> Optional[str]:
        if self._fired or progress.iteration_count < self.after_iterations:
            return None
        self._fired = True
        if progress.active_model == self.model_id:
            return None
        return self.model_id
