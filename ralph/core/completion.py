"""Completion detection.

The completion marker is the literal contract between the calling workflow
and the agent's output, e.g. ``<promise>COMPLETE</promise>``.  Matching is
exact and case-sensitive; nothing is stripped from the response.  A marker
quoted inside an explanation still counts under the default guard; the
stricter guards exist for workflows where that matters.
"""

from __future__ import annotations

from ralph.config.models import CompletionGuard


def detect_completion(response: str, marker: str) -> bool:
    """Return True iff ``marker`` occurs verbatim in ``response``."""
    return marker in response


class CompletionDetector:
    """Stateless completion check with a configurable false-positive guard."""

    def __init__(
        self,
        marker: str,
        guard: CompletionGuard = CompletionGuard.SUBSTRING,
        open_delimiter: str = "<promise>",
        close_delimiter: str = "</promise>",
    ):
        if not marker:
            raise ValueError("Completion marker must be a non-empty string")
        self.marker = marker
        self.guard = CompletionGuard(guard)
        self.open_delimiter = open_delimiter
        self.close_delimiter = close_delimiter

    def detect(self, response: str) -> bool:
        if not response:
            return False

        if self.guard == CompletionGuard.FINAL_LINE:
            lines = [line for line in response.splitlines() if line.strip()]
            return bool(lines) and lines[-1].strip() == self.marker

        if self.guard == CompletionGuard.DELIMITED:
            # Marker already carries the delimiters: plain match is enough.
            if self.marker.startswith(self.open_delimiter) and self.marker.endswith(
                self.close_delimiter
            ):
                return detect_completion(response, self.marker)
            wrapped = f"{self.open_delimiter}{self.marker}{self.close_delimiter}"
            return detect_completion(response, wrapped)

        return detect_completion(response, self.marker)

    __call__ = detect
