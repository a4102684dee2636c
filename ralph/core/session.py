"""Agent sessions driven by the loop.

Defines the ``AgentSession`` protocol the loop controller requires and
``ChatSession``, a reference implementation backed by a chat-completions
model.  Sessions own their conversation history and running cost; the loop
only invokes ``run``/``compact`` and reads the counters.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import List, Optional, Protocol, runtime_checkable

from ralph.core.compaction import CompactionStrategy
from ralph.core.context import DEFAULT_THRESHOLD, ContextGovernor
from ralph.core.history_manager import Message
from ralph.llm.client import ContextWindowExceeded, LLMClient
from ralph.llm.registry import BaseModelSpec
from ralph.utils.tokens import estimate_total_tokens

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an autonomous coding agent working through a task over repeated iterations.
Every iteration you receive the same task prompt; your earlier replies are in the conversation above it.
Continue from where you left off instead of starting over.
When, and only when, the task is genuinely finished, say so using the exact completion marker the task specifies."""

UNATTENDED_NOTE = """No human is available during this run. Do not ask for confirmation or approval; make reasonable decisions and state them."""

ATTENDED_NOTE = """If you need a decision from the user, ask for it clearly and stop."""


def build_system_prompt(autonomous: bool, base: Optional[str] = None) -> str:
    note = UNATTENDED_NOTE if autonomous else ATTENDED_NOTE
    return f"{base or SYSTEM_PROMPT}\n\n{note}"


@runtime_checkable
class AgentSession(Protocol):
    """Protocol that agent collaborators must implement to be driven by the loop.

    ``history`` is a list of chat messages (``{"role": ..., "content": ...}``)
    and is what a model switch carries into the next session.
    """

    @property
    def history(self) -> List[Message]: ...

    def run(self, prompt: str) -> str: ...

    def cumulative_cost(self) -> float: ...

    def context_usage(self) -> tuple[int, int]: ...

    def active_model(self) -> str: ...

    def compact(self) -> bool: ...

    def close(self) -> None: ...


class ChatSession:
    """Conversational session against one chat-completions backend.

    Context usage is the provider-reported token count of the last call.
    Compaction measures candidate histories with the local estimate scaled
    by the reported/estimated ratio of that call, so both figures agree.
    """

    def __init__(
        self,
        spec: BaseModelSpec,
        client: LLMClient,
        compaction: CompactionStrategy,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        autonomous: bool = False,
        system_prompt: Optional[str] = None,
        history: Optional[List[Message]] = None,
        starting_cost: float = 0.0,
    ):
        """Initialize the session.

        Args:
            spec: Model the session is bound to.
            client: Chat client for ``spec``.
            compaction: Strategy used by ``compact``.
            threshold: Utilization fraction that counts as "needs compaction".
            autonomous: Run unattended (no questions, no approvals).
            system_prompt: Base system prompt for a fresh session.
            history: Conversation to continue from, e.g. after a model switch.
            starting_cost: Spend already accrued before this session.
        """
        self.id = str(uuid.uuid4())
        self.spec = spec
        self.autonomous = autonomous
        self.governor = ContextGovernor(threshold)
        self._client = client
        self._compaction = compaction
        self._starting_cost = max(0.0, starting_cost)
        self._scale = 1.0
        self._overflowed = False

        if history:
            self._messages = [dict(m) for m in history]
        else:
            self._messages = [
                {"role": "system", "content": build_system_prompt(autonomous, system_prompt)}
            ]
        self._context_tokens = self._estimate(self._messages)

    def _estimate(self, messages: List[Message]) -> int:
        return estimate_total_tokens(messages, self.spec.tokenizer)

    def _measure(self, messages: List[Message]) -> int:
        return math.ceil(self._estimate(messages) * self._scale)

    @property
    def history(self) -> List[Message]:
        return [dict(m) for m in self._messages]

    def run(self, prompt: str) -> str:
        """Send ``prompt`` and return the assistant's reply.

        History is only extended once the call succeeds, so a retried call
        never duplicates the prompt.
        """
        user_message = {"role": "user", "content": prompt}
        request = self._messages + [user_message]
        try:
            response = self._client.chat(request)
        except ContextWindowExceeded:
            # The rejected request is at least a full window.
            capacity = self.spec.usable_context
            self._scale = max(self._scale, capacity / max(1, self._estimate(request)))
            self._context_tokens = max(self._context_tokens, capacity)
            self._overflowed = True
            raise

        assistant_message: Message = {"role": "assistant", "content": response.text}
        if response.tool_calls:
            assistant_message["tool_calls"] = response.tool_calls
        self._messages.extend([user_message, assistant_message])
        self._overflowed = False

        if response.total_tokens:
            self._context_tokens = response.total_tokens
            self._scale = response.total_tokens / max(1, self._estimate(self._messages))
        else:
            self._context_tokens = self._measure(self._messages)

        logger.debug(
            "Session %s: %d tokens in context, $%.4f spent",
            self.id[:8],
            self._context_tokens,
            self.cumulative_cost(),
        )
        return response.text

    def cumulative_cost(self) -> float:
        # Includes billed-but-failed calls and summarization calls.
        return self._starting_cost + self._client.total_cost

    def context_usage(self) -> tuple[int, int]:
        return self._context_tokens, self.spec.usable_context

    def active_model(self) -> str:
        return self.spec.id

    def compact(self) -> bool:
        """Compact history in place; True if utilization is now below threshold.

        After the provider rejected a request as too large, the history must
        change for compaction to count as a success.
        """
        capacity = self.spec.usable_context
        target = self.governor.target_tokens(capacity)
        before = self._context_tokens
        original = self._messages
        forced = self._overflowed

        def fits(messages: List[Message]) -> bool:
            if forced and messages == original:
                return False
            return self._measure(messages) <= target

        compacted = self._compaction.compact(original, fits)
        if compacted == original:
            logger.warning("Compaction removed nothing (%d tokens, target %d)", before, target)
            return not forced and not self.governor.needs_compaction(before, capacity)

        self._messages = compacted
        self._context_tokens = self._measure(compacted)
        self._overflowed = False

        logger.info("Compaction: %d -> %d tokens (target %d)", before, self._context_tokens, target)
        return not self.governor.needs_compaction(self._context_tokens, capacity)

    def close(self) -> None:
        self._client.close()
