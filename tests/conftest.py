from types import SimpleNamespace

import pytest

from ralph.config.models import RalphConfig, RetryConfig
from ralph.llm.client import LLMResponse
from ralph.llm.registry import AnthropicModel, ChutesModel, OpenAIModel


class FakeSession:
    """Scripted AgentSession replacement (no network).

    ``responses`` items are returned in order; an exception item is raised
    instead.  Once the script runs out, ``default_response`` is returned.
    """

    def __init__(
        self,
        responses=None,
        *,
        cost_per_call: float = 0.0,
        failure_cost: float = 0.0,
        model_id: str = "fake/model",
        capacity: int = 10_000,
        used: int = 0,
        tokens_per_call: int = 0,
        compact_result: bool = True,
        compacted_usage: int = 0,
        default_response: str = "still working",
        history=None,
    ):
        self.responses = list(responses or [])
        self.cost_per_call = cost_per_call
        self.failure_cost = failure_cost
        self.model_id = model_id
        self.capacity = capacity
        self.used = used
        self.tokens_per_call = tokens_per_call
        self.compact_result = compact_result
        self.compacted_usage = compacted_usage
        self.default_response = default_response

        self.cost = 0.0
        self.calls = 0
        self.prompts: list[str] = []
        self.compactions = 0
        self.closed = False
        self._history = list(history or [{"role": "system", "content": "sys"}])

    @property
    def history(self):
        return [dict(m) for m in self._history]

    def run(self, prompt: str) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        item = self.responses.pop(0) if self.responses else self.default_response
        if isinstance(item, BaseException):
            self.cost += self.failure_cost
            raise item
        self.cost += self.cost_per_call
        self.used += self.tokens_per_call
        self._history += [
            {"role": "user", "content": prompt},
            {"role": "assistant", "content": item},
        ]
        return item

    def cumulative_cost(self) -> float:
        return self.cost

    def context_usage(self):
        return self.used, self.capacity

    def active_model(self) -> str:
        return self.model_id

    def compact(self) -> bool:
        self.compactions += 1
        if self.compact_result:
            self.used = self.compacted_usage
        return self.compact_result

    def close(self) -> None:
        self.closed = True


class FakeClient:
    """Stands in for LLMClient: scripted replies, fixed cost and reported usage per call."""

    def __init__(self, spec=None, replies=None, cost=0.01, tokens=(100, 20)):
        self.spec = spec
        self.replies = list(replies or [])
        self.cost = cost
        self.tokens = tokens
        self.total_cost = 0.0
        self.requests = []
        self.closed = False

    def chat(self, messages, max_tokens=None):
        self.requests.append({"messages": [dict(m) for m in messages], "max_tokens": max_tokens})
        self.total_cost += self.cost
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BaseException):
            raise reply
        return LLMResponse(text=reply, input_tokens=self.tokens[0], output_tokens=self.tokens[1])

    def close(self):
        self.closed = True


def chat_history(turns, size=400):
    """System prompt plus ``turns`` user/assistant pairs of ``size``+1 characters each."""
    messages = [{"role": "system", "content": "sys"}]
    for i in range(turns):
        messages.append({"role": "user", "content": f"{i}" + "u" * size})
        messages.append({"role": "assistant", "content": f"{i}" + "a" * size})
    return messages


class FakeSelector:
    """Hands out a prepared FakeSession, plus replacement sessions on switch.

    ``targets`` maps model ids to a FakeSession or to an exception raised by
    ``create``.  Like ``ModelSelector``, a replacement starts from the
    carried session's history and cumulative cost.
    """

    def __init__(self, session=None, targets=None, create_error=None, config=None):
        self.session = session if session is not None else FakeSession()
        self.targets = dict(targets or {})
        self.create_error = create_error
        self.config = config
        self.created: list[SimpleNamespace] = []

    def create(self, model_id=None, carry_history_from=None):
        self.created.append(SimpleNamespace(model_id=model_id, carried=carry_history_from))
        if carry_history_from is None:
            if self.create_error is not None:
                raise self.create_error
            return self.session

        target = self.targets[model_id]
        if isinstance(target, BaseException):
            raise target
        target.cost = carry_history_from.cumulative_cost()
        target._history = carry_history_from.history
        target.model_id = model_id
        return target


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def fake_selector(fake_session):
    return FakeSelector(fake_session)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays: list[float] = []
    sleep = delays.append
    return SimpleNamespace(sleep=sleep, delays=delays)


@pytest.fixture
def fast_config():
    """RalphConfig whose retries do not wait."""
    return RalphConfig(retry=RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False))


# Model specs use the "chars" tokenizer: tiktoken fetches encodings over the network.


@pytest.fixture
def small_spec():
    return ChutesModel(
        model="test/small",
        name="small",
        context_window=2048,
        output_reserve=512,
        input_cost_per_mtok=1.0,
        output_cost_per_mtok=2.0,
        tokenizer="chars",
        base_url="https://llm.test/v1",
    )


@pytest.fixture
def openai_spec():
    return OpenAIModel(
        model="gpt-test",
        name="strong",
        context_window=8192,
        output_reserve=1024,
        input_cost_per_mtok=5.0,
        output_cost_per_mtok=15.0,
        tokenizer="chars",
        base_url="https://openai.test/v1",
    )


@pytest.fixture
def anthropic_spec():
    return AnthropicModel(model="claude-test", tokenizer="chars", base_url="https://anthropic.test/v1")


@pytest.fixture
def api_keys(monkeypatch):
    monkeypatch.setenv("CHUTES_API_TOKEN", "chutes-test")
    monkeypatch.setenv("OPENAI_API_KEY", "openai-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic-test")
    monkeypatch.setenv("OPENROUTER_API_KEY", "openrouter-test")
