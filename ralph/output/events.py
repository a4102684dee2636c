"""Structured progress events emitted by the loop controller.

The loop itself never prints.  It emits an :class:`Event` after every
decision point; renderers and loggers subscribe to an :class:`EventEmitter`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events that can be emitted."""

    LOOP_STARTED = "loop.started"
    ITERATION_STARTED = "iteration.started"
    ITERATION_COMPLETED = "iteration.completed"
    DECISION = "loop.decision"
    CALL_RETRY = "call.retry"
    COMPACTION = "context.compaction"
    MODEL_SWITCHED = "model.switched"
    LOOP_FINISHED = "loop.finished"


@dataclass
class Event:
    """An event from the loop."""

    type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }

    @classmethod
    def loop_started(
        cls,
        model_id: str,
        max_iterations: int,
        cost_ceiling: Optional[float],
        completion_marker: str,
    ) -> "Event":
        return cls(
            type=EventType.LOOP_STARTED,
            data={
                "model": model_id,
                "max_iterations": max_iterations,
                "cost_ceiling": cost_ceiling,
                "completion_marker": completion_marker,
            },
        )

    @classmethod
    def iteration_started(cls, index: int, model_id: str, spend: float) -> "Event":
        return cls(
            type=EventType.ITERATION_STARTED,
            data={"index": index, "model": model_id, "spend": spend},
        )

    @classmethod
    def iteration_completed(
        cls,
        index: int,
        cost_delta: float,
        spend: float,
        completion_detected: bool,
        attempts: int,
        response: str,
        context_used: int,
        context_capacity: int,
    ) -> "Event":
        return cls(
            type=EventType.ITERATION_COMPLETED,
            data={
                "index": index,
                "cost_delta": cost_delta,
                "spend": spend,
                "completion_detected": completion_detected,
                "attempts": attempts,
                "response": response,
                "context": {"used": context_used, "capacity": context_capacity},
            },
        )

    @classmethod
    def decision(cls, decision: str, iteration_count: int, spend: float, reason: str = "") -> "Event":
        """``decision`` is ``continue`` or the terminal state being entered."""
        return cls(
            type=EventType.DECISION,
            data={
                "decision": decision,
                "iteration_count": iteration_count,
                "spend": spend,
                "reason": reason,
            },
        )

    @classmethod
    def call_retry(
        cls,
        index: int,
        attempt: int,
        max_attempts: int,
        delay: float,
        error_code: str,
        message: str,
    ) -> "Event":
        return cls(
            type=EventType.CALL_RETRY,
            data={
                "index": index,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "delay": delay,
                "error_code": error_code,
                "message": message,
            },
        )

    @classmethod
    def compaction(
        cls,
        tokens_before: int,
        tokens_after: int,
        capacity: int,
        recovered: bool,
    ) -> "Event":
        return cls(
            type=EventType.COMPACTION,
            data={
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
                "capacity": capacity,
                "recovered": recovered,
            },
        )

    @classmethod
    def model_switched(cls, from_model: str, to_model: str, iteration_count: int) -> "Event":
        return cls(
            type=EventType.MODEL_SWITCHED,
            data={"from": from_model, "to": to_model, "iteration_count": iteration_count},
        )

    @classmethod
    def loop_finished(
        cls,
        outcome: str,
        iteration_count: int,
        spend: float,
        exit_code: int,
        error: Optional[str] = None,
        budget: Optional[dict[str, Any]] = None,
    ) -> "Event":
        data: dict[str, Any] = {
            "outcome": outcome,
            "iteration_count": iteration_count,
            "spend": spend,
            "exit_code": exit_code,
        }
        if budget is not None:
            data["budget"] = budget
        if error is not None:
            data["error"] = error
        return cls(type=EventType.LOOP_FINISHED, data=data)


Subscriber = Callable[[Event], None]


class EventEmitter:
    """Fans events out to subscribers in subscription order."""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: Event) -> None:
        for subscriber in self._subscribers:
            subscriber(event)


class EventRecorder:
    """Subscriber that keeps every event in memory (tests, notebooks)."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [e.type for e in self.events]


class LoggingSubscriber:
    """Subscriber that forwards events to python logging."""

    def __init__(self, log: logging.Logger = logger, level: int = logging.INFO):
        self.log = log
        self.level = level

    def __call__(self, event: Event) -> None:
        data = {k: v for k, v in event.data.items() if k != "response"}
        self.log.log(self.level, "%s %s", event.type.value, data)
