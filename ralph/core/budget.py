"""Cost governance across loop iterations.

The governor is consulted *before* each agent call, never during one: spend
on an in-flight call cannot be rolled back, so a ceiling bounds the number
of future calls rather than the exact terminal spend.  Terminal spend can
therefore exceed the ceiling by at most one iteration's cost.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


def should_stop(cumulative_cost: float, ceiling: Optional[float]) -> bool:
    """True once ``cumulative_cost`` strictly exceeds ``ceiling``.

    Always False when no ceiling is configured.
    """
    if ceiling is None:
        return False
    return cumulative_cost > ceiling


@dataclass(frozen=True)
class BudgetSnapshot:
    """Immutable budget view for telemetry."""

    ceiling: Optional[float]
    spent: float
    charges: int

    @property
    def remaining(self) -> Optional[float]:
        if self.ceiling is None:
            return None
        return max(0.0, self.ceiling - self.spent)

    @property
    def overshoot(self) -> float:
        """Spend beyond the ceiling (bounded by one iteration's cost)."""
        if self.ceiling is None:
            return 0.0
        return max(0.0, self.spent - self.ceiling)

    def to_dict(self) -> dict:
        return {
            "ceiling": self.ceiling,
            "spent": self.spent,
            "charges": self.charges,
            "remaining": self.remaining,
            "overshoot": self.overshoot,
        }


class CostGovernor:
    """Tracks the loop's running spend against an optional ceiling.

    Spend is accumulated from per-iteration deltas so it stays continuous
    when the active session is replaced by a model switch.
    """

    def __init__(self, ceiling: Optional[float] = None):
        if ceiling is not None and ceiling < 0:
            raise ValueError(f"Cost ceiling must be non-negative, got {ceiling}")
        self._ceiling = ceiling
        self._spent = 0.0
        self._charges = 0

    @property
    def ceiling(self) -> Optional[float]:
        return self._ceiling

    @property
    def spent(self) -> float:
        return self._spent

    def record(self, cost_delta: float) -> float:
        """Add one iteration's cost; negative deltas are clamped to zero.

        Returns:
            The clamped delta that was recorded.
        """
        delta = max(0.0, float(cost_delta))
        self._spent += delta
        self._charges += 1
        return delta

    def should_stop(self) -> bool:
        return should_stop(self._spent, self._ceiling)

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(ceiling=self._ceiling, spent=self._spent, charges=self._charges)
