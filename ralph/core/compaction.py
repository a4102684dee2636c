"""
Pluggable context compaction.

The context governor only fixes *when* compaction runs and whether it
succeeded; *how* history is reduced is a strategy:

1. ``PruneToolOutputs`` - clear old tool outputs outside the recent turns
2. ``TrimOldest`` - pair-aware removal of the oldest messages
3. ``SummarizeHistory`` - replace history with an LLM handoff summary
4. ``ChainedCompaction`` - try strategies in order until the history fits

Every strategy takes the current messages and a ``fits`` predicate and
returns a (possibly unchanged) new message list.  Strategies never mutate
their input.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol, Sequence

from ralph.config.models import CompactionKind, ContextConfig
from ralph.core.errors import ProviderError
from ralph.core.history_manager import Message, trim_until

logger = logging.getLogger(__name__)

Fits = Callable[[List[Message]], bool]
Summarizer = Callable[[List[Message]], str]

PRUNE_MARKER = "[Old tool result content cleared]"

COMPACTION_PROMPT = """You are performing a CONTEXT CHECKPOINT COMPACTION. Create a handoff summary for another LLM that will resume the task.

Include:
- Current progress and key decisions made
- What remains to be done (clear next steps)
- Which files were modified and how
- Any errors encountered and how they were resolved

Be concise and structured. Use bullet points."""

SUMMARY_PREFIX = """Another language model started to solve this problem and produced a summary of its progress. Build on the work that has already been done and avoid duplicating it.

Here is the summary from the previous context:

"""


class CompactionStrategy(Protocol):
    def compact(self, messages: List[Message], fits: Fits) -> List[Message]: ...


class PruneToolOutputs:
    """Clear tool outputs older than the last ``protect_last_turns`` user turns.

    Outputs are cleared oldest first and only until the history fits.
    """

    def __init__(self, protect_last_turns: int = 2, marker: str = PRUNE_MARKER):
        self.protect_last_turns = protect_last_turns
        self.marker = marker

    def _prunable_indices(self, messages: List[Message]) -> List[int]:
        turns = 0
        indices = []
        for i in range(len(messages) - 1, -1, -1):
            msg = messages[i]
            if msg.get("role") == "user":
                turns += 1
            if turns < self.protect_last_turns:
                continue
            if msg.get("role") == "tool" and msg.get("content") != self.marker:
                indices.append(i)
        indices.reverse()
        return indices

    def compact(self, messages: List[Message], fits: Fits) -> List[Message]:
        result = list(messages)
        cleared = 0
        for i in self._prunable_indices(messages):
            if fits(result):
                break
            result[i] = {**result[i], "content": self.marker}
            cleared += 1
        if cleared:
            logger.info("Pruned %d old tool outputs", cleared)
        return result


class TrimOldest:
    """Drop the oldest messages (system prompt preserved) until the history fits."""

    def __init__(self, min_messages: int = 2):
        self.min_messages = min_messages

    def compact(self, messages: List[Message], fits: Fits) -> List[Message]:
        trimmed = trim_until(messages, fits, min_messages=self.min_messages)
        if len(trimmed) < len(messages):
            logger.info("Trimmed %d oldest messages", len(messages) - len(trimmed))
        return trimmed


class SummarizeHistory:
    """Replace the conversation with a summary produced by the model.

    On provider failure the history is returned unchanged and the caller's
    ``fits`` check decides whether compaction failed.
    """

    def __init__(self, summarize: Summarizer, max_attempts: int = 2):
        self.summarize = summarize
        self.max_attempts = max_attempts

    def compact(self, messages: List[Message], fits: Fits) -> List[Message]:
        request = list(messages) + [{"role": "user", "content": COMPACTION_PROMPT}]

        for attempt in range(1, self.max_attempts + 1):
            try:
                summary = self.summarize(request).strip()
            except ProviderError as e:
                logger.warning(
                    "Summarization failed (attempt %d/%d): %s", attempt, self.max_attempts, e
                )
                continue
            if not summary:
                logger.warning("Summarization returned an empty summary")
                continue

            compacted: List[Message] = []
            if messages and messages[0].get("role") == "system":
                compacted.append(messages[0])
            compacted.append({"role": "user", "content": SUMMARY_PREFIX + summary})
            logger.info("Summarized %d messages into a handoff summary", len(messages))
            return compacted

        return messages


class ChainedCompaction:
    """Run strategies in order, stopping as soon as the history fits."""

    def __init__(self, strategies: Sequence[CompactionStrategy]):
        self.strategies = list(strategies)

    def compact(self, messages: List[Message], fits: Fits) -> List[Message]:
        for strategy in self.strategies:
            if fits(messages):
                break
            messages = strategy.compact(messages, fits)
        return messages


def build_strategy(
    config: ContextConfig,
    summarize: Optional[Summarizer] = None,
) -> CompactionStrategy:
    """Build the configured strategy.

    ``summarize`` is required for the ``summarize`` strategy and optional for
    ``chain``, where the summarization step is skipped without it.
    """
    prune = PruneToolOutputs(protect_last_turns=config.protect_last_turns)

    if config.strategy == CompactionKind.PRUNE:
        return prune
    if config.strategy == CompactionKind.TRIM:
        return TrimOldest()
    if config.strategy == CompactionKind.SUMMARIZE:
        if summarize is None:
            raise ValueError("The summarize strategy needs a summarizer")
        return SummarizeHistory(summarize)

    chain: List[CompactionStrategy] = [prune, TrimOldest()]
    if summarize is not None:
        chain.append(SummarizeHistory(summarize))
    return ChainedCompaction(chain)
