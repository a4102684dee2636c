"""
The Ralph loop - iterate an agent session until it emits a completion marker.

State machine::

    IDLE -> RUNNING -> COMPLETED
                    -> BUDGET_EXCEEDED
                    -> CONTEXT_EXHAUSTED
                    -> MAX_ITERATIONS_REACHED
                    -> FAILED

Each pass through RUNNING:

1. iteration cap reached            -> MaxIterationsReached
2. cost governor says stop          -> BudgetExceeded
3. context over threshold and compaction cannot recover -> ContextExhausted
4. optional model switch (policy)
5. call the session with the same prompt, retrying provider errors
6. record the iteration and check for the completion marker
7. marker found -> Completed, otherwise loop

The same prompt is sent every iteration; all adaptation happens inside the
agent through its accumulated history.  Exactly one call is in flight at a
time and there is no mid-call cancellation.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Protocol

from ralph.api.retry import RetryHandler, RetryState
from ralph.config.models import LoopConfig, RalphConfig, RetryConfig
from ralph.core.budget import CostGovernor
from ralph.core.completion import CompletionDetector
from ralph.core.context import ContextGovernor
from ralph.core.errors import ProviderError, RalphError
from ralph.core.outcome import (
    BudgetExceeded,
    Completed,
    ContextExhausted,
    Failed,
    IterationRecord,
    LoopOutcome,
    LoopState,
    MaxIterationsReached,
)
from ralph.core.session import AgentSession
from ralph.core.switching import EscalationPolicy, LoopProgress, SwitchPolicy
from ralph.llm.client import ContextWindowExceeded
from ralph.output.events import Event, EventEmitter

logger = logging.getLogger(__name__)


class SessionFactory(Protocol):
    """What the loop needs from a model selector."""

    def create(
        self,
        model_id: Optional[str] = None,
        carry_history_from: Optional[AgentSession] = None,
    ) -> AgentSession: ...


class LoopController:
    """Drives one loop invocation. Single use: not reentrant once terminal."""

    def __init__(
        self,
        config: LoopConfig,
        selector: SessionFactory,
        *,
        session: Optional[AgentSession] = None,
        detector: Optional[CompletionDetector] = None,
        context_governor: Optional[ContextGovernor] = None,
        retry: Optional[RetryHandler] = None,
        switch_policy: Optional[SwitchPolicy] = None,
        events: Optional[EventEmitter] = None,
        close_session: bool = True,
    ):
        """Initialize the controller.

        Args:
            config: Per-invocation loop configuration.
            selector: Builds the session (and replacement sessions on a switch).
            session: Pre-built session to drive instead of creating one.
            detector: Completion detector; defaults to exact substring matching.
            context_governor: Compaction trigger; defaults to 85% utilization.
            retry: Retry handler for provider errors.
            switch_policy: Consulted before each call for a model switch.
            events: Receives progress events.
            close_session: Close the active session when the loop ends.
        """
        self.config = config
        self.selector = selector
        self.detector = detector or CompletionDetector(config.completion_marker)
        self.context_governor = context_governor or ContextGovernor()
        self.retry = retry or RetryHandler(RetryConfig())
        self.switch_policy = switch_policy
        self.events = events or EventEmitter()
        self.close_session = close_session

        self.state = LoopState.IDLE
        self._session = session
        self._cost = CostGovernor(config.cost_ceiling)
        self._records: List[IterationRecord] = []
        self._cost_baseline = 0.0
        self._forced_compaction_at: Optional[int] = None

    @classmethod
    def from_config(
        cls,
        loop_config: LoopConfig,
        selector: SessionFactory,
        config: RalphConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ) -> "LoopController":
        """Build a controller wired from a ``RalphConfig``."""
        completion = config.completion
        if "switch_policy" not in kwargs and config.escalation is not None:
            kwargs["switch_policy"] = EscalationPolicy(
                config.escalation.model, config.escalation.after_iterations
            )
        return cls(
            loop_config,
            selector,
            detector=CompletionDetector(
                loop_config.completion_marker,
                guard=completion.guard,
                open_delimiter=completion.open_delimiter,
                close_delimiter=completion.close_delimiter,
            ),
            context_governor=ContextGovernor(config.context.threshold),
            retry=RetryHandler(config.retry, sleep=sleep),
            **kwargs,
        )

    @property
    def iterations(self) -> tuple[IterationRecord, ...]:
        """The iteration log, oldest first."""
        return tuple(self._records)

    @property
    def session(self) -> Optional[AgentSession]:
        return self._session

    @property
    def spend(self) -> float:
        return self._cost.spent

    def run(self) -> LoopOutcome:
        """Run the loop to a terminal outcome.

        An unexpected exception propagates with the controller left in the
        FAILED state.
        """
        if self.state != LoopState.IDLE:
            raise RuntimeError(f"LoopController is single-use (state: {self.state.value})")
        self.state = LoopState.RUNNING

        try:
            if self._session is None:
                try:
                    self._session = self.selector.create(self.config.model_id)
                except RalphError as e:
                    logger.error("Could not create agent session: %s", e)
                    self._emit_started(self.config.model_id or "")
                    return self._finish(Failed(e, iteration_count=0, spend=0.0))

            self._cost_baseline = self._session.cumulative_cost()
            self._emit_started(self._session.active_model())
            return self._run()
        finally:
            if not self.state.is_terminal:
                self.state = LoopState.FAILED
            if self.close_session and self._session is not None:
                self._session.close()

    def _emit_started(self, model_id: str) -> None:
        self.events.emit(
            Event.loop_started(
                model_id,
                self.config.max_iterations,
                self.config.cost_ceiling,
                self.config.completion_marker,
            )
        )

    def _run(self) -> LoopOutcome:
        while True:
            count = len(self._records)

            if count >= self.config.max_iterations:
                return self._finish(MaxIterationsReached(count, self.spend))

            if self._cost.should_stop():
                return self._finish(BudgetExceeded(count, self.spend, self._cost.ceiling))

            exhausted = self._govern_context()
            if exhausted is not None:
                return self._finish(exhausted)

            try:
                switched = self._maybe_switch_model()
            except RalphError as e:
                logger.error("Model switch failed: %s", e)
                return self._finish(Failed(e, iteration_count=count, spend=self.spend))

            # the new model may have a smaller window
            if switched:
                exhausted = self._govern_context()
                if exhausted is not None:
                    return self._finish(exhausted)

            session = self._session
            self.events.emit(Event.iteration_started(count, session.active_model(), self.spend))

            try:
                response, attempts = self.retry.execute(
                    lambda: session.run(self.config.prompt),
                    on_retry=lambda state: self._on_retry(count, state),
                )
            except ContextWindowExceeded as e:
                self._charge()
                logger.warning("Provider rejected the request as too large: %s", e)
                if self._forced_compaction_at != count:
                    self._forced_compaction_at = count
                    if self._compact():
                        continue
                return self._finish(self._exhausted(count))
            except ProviderError as e:
                self._charge()
                logger.error("Agent call failed after retries: %s", e)
                return self._finish(Failed(e, iteration_count=count, spend=self.spend))

            delta = self._charge()
            detected = self.detector.detect(response)
            record = IterationRecord(
                index=count,
                prompt_sent=self.config.prompt,
                response_received=response,
                cost_delta=delta,
                completion_detected=detected,
                model_id=session.active_model(),
                cumulative_cost=self.spend,
                attempts=attempts,
            )
            self._records.append(record)

            used, capacity = session.context_usage()
            self.events.emit(
                Event.iteration_completed(
                    index=count,
                    cost_delta=delta,
                    spend=self.spend,
                    completion_detected=detected,
                    attempts=attempts,
                    response=response,
                    context_used=used,
                    context_capacity=capacity,
                )
            )
            logger.info(
                "Iteration %d/%d done: $%.4f (+$%.4f), completion=%s",
                count + 1,
                self.config.max_iterations,
                self.spend,
                delta,
                detected,
            )

            if detected:
                return self._finish(Completed(response, len(self._records), self.spend))

            self.events.emit(Event.decision("continue", len(self._records), self.spend))

    def _charge(self) -> float:
        """Record spend accrued by the session since the last charge."""
        current = self._session.cumulative_cost()
        delta = self._cost.record(current - self._cost_baseline)
        self._cost_baseline = max(self._cost_baseline, current)
        return delta

    def _exhausted(self, count: int) -> ContextExhausted:
        used, capacity = self._session.context_usage()
        return ContextExhausted(count, self.spend, tokens_used=used, capacity=capacity)

    def _govern_context(self) -> Optional[ContextExhausted]:
        used, capacity = self._session.context_usage()
        if not self.context_governor.needs_compaction(used, capacity):
            return None
        logger.info("Context at %d/%d tokens, compacting", used, capacity)
        if self._compact():
            return None
        return self._exhausted(len(self._records))

    def _compact(self) -> bool:
        session = self._session
        before, capacity = session.context_usage()
        recovered = session.compact()
        self._charge()
        after, capacity = session.context_usage()
        recovered = recovered and not self.context_governor.needs_compaction(after, capacity)
        self.events.emit(Event.compaction(before, after, capacity, recovered))
        if not recovered:
            logger.warning("Compaction could not bring context below threshold (%d/%d)", after, capacity)
        return recovered

    def _maybe_switch_model(self) -> bool:
        if self.switch_policy is None:
            return False
        current = self._session
        progress = LoopProgress(
            iteration_count=len(self._records),
            spend=self.spend,
            active_model=current.active_model(),
            last_record=self._records[-1] if self._records else None,
        )
        target = self.switch_policy(progress)
        if not target:
            return False

        # ModelIncompatible / UnknownModelError propagate to the caller.
        replacement = self.selector.create(target, carry_history_from=current)
        self._charge()
        self._session = replacement
        self._cost_baseline = replacement.cumulative_cost()
        if self.close_session:
            current.close()

        self.events.emit(
            Event.model_switched(current.active_model(), replacement.active_model(), len(self._records))
        )
        logger.info("Switched model %s -> %s", current.active_model(), replacement.active_model())
        return True

    def _on_retry(self, index: int, state: RetryState) -> None:
        error = state.last_error
        self.events.emit(
            Event.call_retry(
                index=index,
                attempt=state.attempt,
                max_attempts=state.max_attempts,
                delay=state.delay,
                error_code=error.code if error else "unknown",
                message=str(error) if error else "",
            )
        )

    def _finish(self, outcome: LoopOutcome) -> LoopOutcome:
        self.state = outcome.state
        error = getattr(outcome, "error", None)
        self.events.emit(
            Event.decision(
                outcome.kind,
                outcome.iteration_count,
                outcome.spend,
                reason=str(error) if error else "",
            )
        )
        self.events.emit(
            Event.loop_finished(
                outcome.kind,
                outcome.iteration_count,
                outcome.spend,
                outcome.exit_code,
                error=str(error) if error else None,
                budget=self._cost.snapshot().to_dict(),
            )
        )
        logger.info(
            "Loop finished: %s after %d iterations ($%.4f)",
            outcome.kind,
            outcome.iteration_count,
            outcome.spend,
        )
        return outcome


def run_loop(
    prompt: str,
    completion_marker: str,
    max_iterations: int = 50,
    cost_ceiling: Optional[float] = None,
    model_id: Optional[str] = None,
    *,
    selector: SessionFactory,
    config: Optional[RalphConfig] = None,
    events: Optional[EventEmitter] = None,
    switch_policy: Optional[SwitchPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> LoopOutcome:
    """Run one loop invocation and return its outcome.

    Args:
        prompt: Prompt sent unchanged on every iteration.
        completion_marker: Literal token that signals the task is done.
        max_iterations: Upper bound on successful agent calls.
        cost_ceiling: Optional USD ceiling checked before each call.
        model_id: Model id or alias; the configured default when None.
        selector: Builds agent sessions, e.g. ``ModelSelector``.
        config: Retry/context/completion settings; taken from the selector
            when it carries one.
        events: Receives progress events.
        switch_policy: Overrides the configured escalation policy.
        sleep: Used between retries.
    """
    config = config or getattr(selector, "config", None) or RalphConfig()
    loop_config = LoopConfig(
        prompt=prompt,
        completion_marker=completion_marker,
        max_iterations=max_iterations,
        cost_ceiling=cost_ceiling,
        model_id=model_id,
    )
    kwargs = {}
    if switch_policy is not None:
        kwargs["switch_policy"] = switch_policy
    controller = LoopController.from_config(
        loop_config, selector, config, sleep=sleep, events=events, **kwargs
    )
    return controller.run()
