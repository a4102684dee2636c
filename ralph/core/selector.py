"""Model selection: build sessions for a model and swap backends mid-loop.

A switch constructs a fresh session for the new backend seeded with the
current conversation and running cost.  It is a policy layered on top of
an otherwise unchanged loop: the loop keeps its iteration counter and spend.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import httpx

from ralph.config.models import RalphConfig
from ralph.core.compaction import build_strategy
from ralph.core.errors import ModelIncompatible
from ralph.core.history_manager import has_tool_traffic
from ralph.core.session import AgentSession, ChatSession
from ralph.llm.client import LLMClient
from ralph.llm.registry import BaseModelSpec, ModelRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[BaseModelSpec], LLMClient]


def check_compatible(source: Optional[BaseModelSpec], target: BaseModelSpec, history: list) -> None:
    """Raise ``ModelIncompatible`` if ``history`` cannot move to ``target``."""
    source_id = source.id if source else "unknown"
    if source is not None and source.transcript_format != target.transcript_format:
        raise ModelIncompatible(
            f"Cannot carry history from {source_id} ({source.transcript_format.value}) "
            f"to {target.id} ({target.transcript_format.value})",
            source_model=source_id,
            target_model=target.id,
        )
    if not target.supports_tools and has_tool_traffic(history):
        raise ModelIncompatible(
            f"History contains tool calls but {target.id} does not accept them",
            source_model=source_id,
            target_model=target.id,
        )


class ModelSelector:
    """Creates ``ChatSession``s from the model registry.

    Usage::

        selector = ModelSelector(config)
        session = selector.create("openai/gpt-4o")
        session = selector.switch_model(session, "strong")
    """

    def __init__(
        self,
        config: RalphConfig,
        registry: Optional[ModelRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.registry = registry or config.build_registry()
        self._client_factory = client_factory or (
            lambda spec: LLMClient(spec, timeout=config.timeout, transport=transport)
        )

    def create(
        self,
        model_id: Optional[str] = None,
        carry_history_from: Optional[AgentSession] = None,
    ) -> ChatSession:
        """Build a session for ``model_id`` (default model when None).

        With ``carry_history_from``, the new session starts from that
        session's history and cumulative cost.

        Raises:
            UnknownModelError: If ``model_id`` cannot be resolved.
            ModelIncompatible: If the history cannot move to the new backend.
        """
        spec = self.registry.resolve(model_id)

        history = None
        starting_cost = 0.0
        if carry_history_from is not None:
            history = carry_history_from.history
            source = self._spec_for(carry_history_from)
            check_compatible(source, spec, history)
            starting_cost = carry_history_from.cumulative_cost()

        client = self._client_factory(spec)
        context = self.config.context
        strategy = build_strategy(
            context,
            summarize=lambda msgs: client.chat(msgs, max_tokens=context.summary_max_tokens).text,
        )
        return ChatSession(
            spec,
            client,
            strategy,
            threshold=context.threshold,
            autonomous=self.config.autonomous,
            system_prompt=self.config.system_prompt,
            history=history,
            starting_cost=starting_cost,
        )

    def switch_model(self, current: AgentSession, new_model_id: str) -> ChatSession:
        """Replace ``current`` with a session on ``new_model_id``.

        The old session is closed only once the new one exists, so a failed
        switch leaves ``current`` usable.
        """
        session = self.create(new_model_id, carry_history_from=current)
        logger.info("Switched model %s -> %s", current.active_model(), session.active_model())
        current.close()
        return session

    def _spec_for(self, session: AgentSession) -> Optional[BaseModelSpec]:
        spec = getattr(session, "spec", None)
        if isinstance(spec, BaseModelSpec):
            return spec
        try:
            return self.registry.resolve(session.active_model())
        except ValueError:
            return None
