"""Context-window governance.

Utilization is measured against the *usable* context of the active model
(context window minus output reserve), which is model-specific
configuration rather than a constant.
"""

from __future__ import annotations

DEFAULT_THRESHOLD = 0.85


def needs_compaction(tokens_used: int, capacity: int, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when ``tokens_used`` exceeds ``threshold`` of ``capacity``."""
    if capacity <= 0:
        raise ValueError(f"Context capacity must be positive, got {capacity}")
    return tokens_used > capacity * threshold


class ContextGovernor:
    """Decides when a session's history must be compacted."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        if not 0 < threshold <= 1:
            raise ValueError(f"Threshold must be in (0, 1], got {threshold}")
        self.threshold = threshold

    def needs_compaction(self, tokens_used: int, capacity: int) -> bool:
        return needs_compaction(tokens_used, capacity, self.threshold)

    def target_tokens(self, capacity: int) -> int:
        """Largest token count that does not trigger compaction."""
        return int(capacity * self.threshold)
