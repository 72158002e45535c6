"""Reduce a chat transcript to the single prompt string the backend takes.

The backend keeps its own conversation per session, so when the transcript
ends with a user turn only that turn is sent; earlier turns are dropped.
Without a trailing user turn the whole transcript is flattened, with system
and assistant turns tagged so they stay distinguishable. Messages with any
other role (tool or function results) never reach the prompt.
"""

from __future__ import annotations

from ..types import ChatMessage, ValidationError

SYSTEM_TAG = "[System]: "
ASSISTANT_TAG = "[Assistant]: "


def build_prompt(messages: list[ChatMessage]) -> str:
    if not messages:
        raise ValidationError("messages is required")

    last = messages[-1]
    if last.role == "user":
        return last.text

    parts: list[str] = []
    for msg in messages:
        if msg.role == "system":
            parts.append(SYSTEM_TAG + msg.text)
        elif msg.role == "assistant":
            parts.append(ASSISTANT_TAG + msg.text)
        elif msg.role == "user":
            parts.append(msg.text)
    return "\n\n".join(parts)
