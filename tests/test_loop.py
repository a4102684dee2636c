import pytest

from conftest import FakeClient, FakeSelector, FakeSession, chat_history
from ralph.core.compaction import TrimOldest
from ralph.core.errors import ModelIncompatible, UnknownModelError
from ralph.core.loop import LoopController, run_loop
from ralph.core.outcome import (
    BudgetExceeded,
    Completed,
    ContextExhausted,
    Failed,
    LoopState,
    MaxIterationsReached,
)
from ralph.core.session import ChatSession
from ralph.core.switching import EscalationPolicy
from ralph.config.models import CompletionGuard, LoopConfig
from ralph.llm.client import ContextWindowExceeded, LLMError
from ralph.output.events import EventEmitter, EventRecorder, EventType


def make_controller(selector, config, events=None, switch_policy=None, **loop):
    loop.setdefault("prompt", "fix the tests")
    loop.setdefault("completion_marker", "DONE")
    kwargs = {}
    if switch_policy is not None:
        kwargs["switch_policy"] = switch_policy
    return LoopController.from_config(
        LoopConfig(**loop),
        selector,
        config,
        events=events,
        sleep=lambda _seconds: None,
        **kwargs,
    )


def test_budget_stops_after_third_call(fast_config):
    session = FakeSession(cost_per_call=2.0)
    controller = make_controller(FakeSelector(session), fast_config, cost_ceiling=5.0)

    outcome = controller.run()

    # 2 + 2 + 2 = 6 > 5, checked before the 4th call
    assert isinstance(outcome, BudgetExceeded)
    assert session.calls == 3
    assert outcome.iteration_count == 3
    assert outcome.spend == pytest.approx(6.0)
    assert outcome.ceiling == 5.0
    assert controller.state == LoopState.BUDGET_EXCEEDED


def test_max_iterations_reached_after_exact_count(fast_config):
    session = FakeSession()
    outcome = make_controller(FakeSelector(session), fast_config, max_iterations=3).run()

    assert isinstance(outcome, MaxIterationsReached)
    assert outcome.iteration_count == 3
    assert session.calls == 3
    assert outcome.exit_code == 3


def test_completion_on_first_response(fast_config):
    session = FakeSession(["All green. DONE"])
    controller = make_controller(FakeSelector(session), fast_config)

    outcome = controller.run()

    assert isinstance(outcome, Completed)
    assert outcome.response == "All green. DONE"
    assert outcome.iteration_count == 1
    assert outcome.is_success
    assert session.calls == 1
    assert [r.completion_detected for r in controller.iterations] == [True]


def test_completion_is_idempotent_for_deterministic_agent(fast_config):
    counts = []
    for _ in range(3):
        session = FakeSession(default_response="DONE")
        counts.append(make_controller(FakeSelector(session), fast_config).run().iteration_count)
    assert counts == [1, 1, 1]


def test_completion_marker_is_case_sensitive(fast_config):
    session = FakeSession(default_response="the task is complete")
    outcome = make_controller(
        FakeSelector(session), fast_config, completion_marker="COMPLETE", max_iterations=2
    ).run()

    assert isinstance(outcome, MaxIterationsReached)
    assert session.calls == 2


def test_same_prompt_every_iteration(fast_config):
    session = FakeSession(["a", "b", "DONE"])
    make_controller(FakeSelector(session), fast_config, prompt="keep going").run()
    assert session.prompts == ["keep going"] * 3


def test_records_are_sequential_and_cost_is_monotonic(fast_config):
    session = FakeSession(["a", "b", "c", "DONE"], cost_per_call=0.25)
    controller = make_controller(FakeSelector(session), fast_config)

    outcome = controller.run()

    records = controller.iterations
    assert [r.index for r in records] == [0, 1, 2, 3]
    totals = [r.cumulative_cost for r in records]
    assert totals == sorted(totals)
    assert all(r.cost_delta == pytest.approx(0.25) for r in records)
    assert outcome.spend == pytest.approx(1.0)
    # only the last record can be a completion
    assert [r.completion_detected for r in records] == [False, False, False, True]


def test_overshoot_bounded_by_one_iteration(fast_config):
    session = FakeSession(cost_per_call=0.7)
    outcome = make_controller(FakeSelector(session), fast_config, cost_ceiling=2.0).run()

    assert isinstance(outcome, BudgetExceeded)
    assert outcome.spend > 2.0
    assert outcome.spend - 2.0 <= 0.7


def test_switch_preserves_counter_and_spend(fast_config):
    first = FakeSession(cost_per_call=1.0, model_id="chutes/cheap")
    second = FakeSession(["still", "DONE"], cost_per_call=1.0)
    selector = FakeSelector(first, targets={"openai/strong": second})
    recorder = EventRecorder()
    controller = make_controller(
        selector,
        fast_config,
        events=EventEmitter([recorder]),
        switch_policy=EscalationPolicy("openai/strong", after_iterations=2),
    )

    outcome = controller.run()

    assert isinstance(outcome, Completed)
    assert outcome.iteration_count == 4
    assert outcome.spend == pytest.approx(4.0)
    assert first.calls == 2
    assert second.calls == 2
    assert first.closed and second.closed
    assert [r.model_id for r in controller.iterations] == [
        "chutes/cheap",
        "chutes/cheap",
        "openai/strong",
        "openai/strong",
    ]
    switched = [e for e in recorder.events if e.type == EventType.MODEL_SWITCHED]
    assert len(switched) == 1
    assert switched[0].data == {"from": "chutes/cheap", "to": "openai/strong", "iteration_count": 2}


def test_incompatible_switch_fails(fast_config):
    session = FakeSession(cost_per_call=0.5)
    selector = FakeSelector(
        session, targets={"anthropic/claude": ModelIncompatible("formats differ")}
    )
    outcome = make_controller(
        selector,
        fast_config,
        switch_policy=EscalationPolicy("anthropic/claude", after_iterations=1),
    ).run()

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ModelIncompatible)
    assert outcome.iteration_count == 1
    assert outcome.spend == pytest.approx(0.5)
    assert session.calls == 1
    assert session.closed


def test_session_creation_failure_is_failed(fast_config):
    selector = FakeSelector(create_error=UnknownModelError("no such provider"))
    recorder = EventRecorder()
    controller = make_controller(
        selector, fast_config, events=EventEmitter([recorder]), model_id="nowhere/model"
    )

    outcome = controller.run()

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, UnknownModelError)
    assert outcome.iteration_count == 0
    assert selector.session.calls == 0
    assert recorder.types() == [EventType.LOOP_STARTED, EventType.DECISION, EventType.LOOP_FINISHED]
    assert recorder.events[0].data["model"] == "nowhere/model"
    assert controller.state == LoopState.FAILED


def test_retryable_failure_does_not_consume_iteration(fast_config):
    session = FakeSession([LLMError("slow down", code="rate_limit"), "DONE"])
    recorder = EventRecorder()
    controller = make_controller(FakeSelector(session), fast_config, events=EventEmitter([recorder]))

    outcome = controller.run()

    assert isinstance(outcome, Completed)
    assert outcome.iteration_count == 1
    assert session.calls == 2
    assert controller.iterations[0].attempts == 2
    retries = [e for e in recorder.events if e.type == EventType.CALL_RETRY]
    assert [e.data["error_code"] for e in retries] == ["rate_limit"]


def test_retries_are_bounded(fast_config):
    session = FakeSession([LLMError("boom", code="server_error")] * 10)
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, Failed)
    assert outcome.error.code == "server_error"
    assert session.calls == fast_config.retry.max_attempts
    assert outcome.iteration_count == 0


def test_non_retryable_error_fails_immediately_and_charges_spend(fast_config):
    session = FakeSession(
        ["ok", LLMError("bad key", code="auth_error")], cost_per_call=1.0, failure_cost=0.5
    )
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, Failed)
    assert session.calls == 2
    assert outcome.iteration_count == 1
    assert outcome.spend == pytest.approx(1.5)
    assert outcome.exit_code == 1


def test_unrecoverable_compaction_ends_without_call(fast_config):
    session = FakeSession(used=9_500, capacity=10_000, compact_result=False)
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, ContextExhausted)
    assert session.calls == 0
    assert session.compactions == 1
    assert outcome.tokens_used == 9_500
    assert outcome.capacity == 10_000


def test_compaction_recovers_and_loop_continues(fast_config):
    session = FakeSession(["DONE"], used=9_500, capacity=10_000, compacted_usage=1_000)
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, Completed)
    assert session.compactions == 1
    assert session.calls == 1


def test_compaction_still_over_threshold_is_exhausted(fast_config):
    session = FakeSession(used=9_500, capacity=10_000, compacted_usage=9_000)
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, ContextExhausted)
    assert session.calls == 0


def test_provider_context_overflow_forces_one_compaction(fast_config):
    session = FakeSession([ContextWindowExceeded("maximum context length exceeded"), "DONE"])
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, Completed)
    assert session.compactions == 1
    assert session.calls == 2


def test_provider_context_overflow_twice_is_exhausted(fast_config):
    overflow = ContextWindowExceeded("too many tokens")
    session = FakeSession([overflow, overflow, "DONE"])
    outcome = make_controller(FakeSelector(session), fast_config).run()

    assert isinstance(outcome, ContextExhausted)
    assert session.compactions == 1
    assert session.calls == 2


def chat_session(spec, client):
    return ChatSession(spec, client, TrimOldest(), history=chat_history(3))


def request_sizes(client):
    return [len(r["messages"]) for r in client.requests]


def test_reported_usage_drives_compaction(fast_config, small_spec):
    # the provider counts far more tokens than the local estimate
    client = FakeClient(replies=["working", "DONE"], tokens=(1400, 100))
    recorder = EventRecorder()
    controller = make_controller(
        FakeSelector(chat_session(small_spec, client)), fast_config, events=EventEmitter([recorder])
    )

    outcome = controller.run()

    assert isinstance(outcome, Completed)
    assert request_sizes(client) == [8, 8]
    compactions = [e.data for e in recorder.events if e.type == EventType.COMPACTION]
    assert len(compactions) == 1
    assert compactions[0]["tokens_before"] == 1500
    assert compactions[0]["tokens_after"] < 1500
    assert compactions[0]["recovered"] is True


def test_forced_compaction_shrinks_the_next_request(fast_config, small_spec):
    client = FakeClient(replies=[ContextWindowExceeded("prompt is too long"), "DONE"])
    outcome = make_controller(FakeSelector(chat_session(small_spec, client)), fast_config).run()

    assert isinstance(outcome, Completed)
    assert outcome.iteration_count == 1
    assert request_sizes(client) == [8, 6]


def test_repeated_overflow_reports_full_window(fast_config, small_spec):
    overflow = ContextWindowExceeded("prompt is too long")
    client = FakeClient(replies=[overflow, overflow])
    outcome = make_controller(FakeSelector(chat_session(small_spec, client)), fast_config).run()

    assert isinstance(outcome, ContextExhausted)
    assert request_sizes(client) == [8, 6]
    assert outcome.tokens_used == small_spec.usable_context
    assert outcome.capacity == small_spec.usable_context


def test_programming_errors_propagate(fast_config):
    session = FakeSession([KeyError("bug")])
    controller = make_controller(FakeSelector(session), fast_config)

    with pytest.raises(KeyError):
        controller.run()
    assert session.closed
    assert controller.state == LoopState.FAILED
    assert controller.state.is_terminal


def test_controller_is_single_use(fast_config):
    controller = make_controller(FakeSelector(FakeSession(["DONE"])), fast_config)
    controller.run()
    with pytest.raises(RuntimeError):
        controller.run()


def test_events_follow_decisions_in_order(fast_config):
    recorder = EventRecorder()
    session = FakeSession(["working", "DONE"])
    make_controller(FakeSelector(session), fast_config, events=EventEmitter([recorder])).run()

    assert recorder.types() == [
        EventType.LOOP_STARTED,
        EventType.ITERATION_STARTED,
        EventType.ITERATION_COMPLETED,
        EventType.DECISION,
        EventType.ITERATION_STARTED,
        EventType.ITERATION_COMPLETED,
        EventType.DECISION,
        EventType.LOOP_FINISHED,
    ]
    decisions = [e.data["decision"] for e in recorder.events if e.type == EventType.DECISION]
    assert decisions == ["continue", "completed"]
    finished = recorder.events[-1].data
    assert finished["outcome"] == "completed"
    assert finished["exit_code"] == 0
    assert finished["iteration_count"] == 2
    assert finished["budget"] == {
        "ceiling": None,
        "spent": 0.0,
        "charges": 2,
        "remaining": None,
        "overshoot": 0.0,
    }


def test_delimited_guard_ignores_quoted_marker(fast_config):
    config = fast_config.model_copy(
        update={"completion": fast_config.completion.model_copy(update={"guard": CompletionGuard.DELIMITED})}
    )
    session = FakeSession(['I will print "DONE" when finished', "<promise>DONE</promise>"])
    outcome = make_controller(FakeSelector(session), config).run()

    assert isinstance(outcome, Completed)
    assert outcome.iteration_count == 2


def test_run_loop_uses_selector_config(fast_config):
    session = FakeSession(["nope", "DONE"], cost_per_call=0.1)
    selector = FakeSelector(session, config=fast_config)

    outcome = run_loop("do it", "DONE", max_iterations=5, selector=selector, sleep=lambda _s: None)

    assert isinstance(outcome, Completed)
    assert outcome.iteration_count == 2
    assert outcome.spend == pytest.approx(0.2)
    assert selector.created[0].model_id is None
