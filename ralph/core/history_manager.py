"""Pair-aware history trimming.

Dropping a message must not leave the transcript malformed: an assistant
message's tool calls and their tool results go together, and a user turn
takes the assistant reply that answered it.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List

Message = Dict[str, Any]


def _tool_call_ids(msg: Message) -> set[str]:
    return {
        c.get("id")
        for c in (msg.get("tool_calls") or [])
        if isinstance(c, dict) and c.get("id")
    }


def has_tool_traffic(messages: List[Message]) -> bool:
    """True if any message is a tool result or carries tool calls."""
    return any(m.get("role") == "tool" or m.get("tool_calls") for m in messages)


def drop_oldest(messages: List[Message], preserve_system_prompt: bool = True) -> List[Message]:
    """Remove the oldest droppable message together with its counterparts."""
    if not messages:
        return messages

    start = 0
    if preserve_system_prompt and messages[0].get("role") == "system":
        if len(messages) == 1:
            return messages
        start = 1

    removed = messages[start]
    head = messages[:start]
    tail = messages[start + 1 :]
    role = removed.get("role")

    if role == "assistant":
        ids = _tool_call_ids(removed)
        if ids:
            tail = [m for m in tail if not (m.get("role") == "tool" and m.get("tool_call_id") in ids)]
    elif role == "tool":
        call_id = removed.get("tool_call_id")
        if call_id:
            tail = [_without_tool_call(m, call_id) for m in tail]
    elif role == "user" and tail and tail[0].get("role") == "assistant":
        # Keep turns coherent: the reply goes with its prompt.
        return drop_oldest(head + tail, preserve_system_prompt)

    return head + tail


def _without_tool_call(msg: Message, call_id: str) -> Message:
    if msg.get("role") != "assistant" or not msg.get("tool_calls"):
        return msg
    kept = [c for c in msg["tool_calls"] if c.get("id") != call_id]
    if len(kept) == len(msg["tool_calls"]):
        return msg
    return {**msg, "tool_calls": kept}


def trim_until(
    messages: List[Message],
    fits: Callable[[List[Message]], bool],
    min_messages: int = 2,
    max_drops: int = 200,
) -> List[Message]:
    """Drop oldest messages until ``fits`` accepts the history.

    Stops early once only ``min_messages`` remain or nothing more can be
    dropped, so the result may still not fit.
    """
    trimmed = messages
    drops = 0
    while not fits(trimmed) and len(trimmed) > min_messages and drops < max_drops:
        shorter = drop_oldest(trimmed)
        if len(shorter) == len(trimmed):
            break
        trimmed = shorter
        drops += 1
    return trimmed
