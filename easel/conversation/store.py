"""Conversation history with token accounting and compaction.

History is append-only. The two exceptions are clear(), used by /clear,
and compact(), which folds everything but the most recent messages into a
single synthetic summary message.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass

from easel.llm.types import (
    ImagePart,
    MediaType,
    Message,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

SUMMARY_PREFIX = "[Previous conversation summary]\n"
IMAGE_TOKENS = 1600
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ContextBreakdown:
    user_tokens: int = 0
    assistant_tokens: int = 0
    tool_tokens: int = 0
    image_count: int = 0
    message_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.user_tokens + self.assistant_tokens + self.tool_tokens


class Conversation:
    """Ordered message history owned by a single conversation engine."""

    def __init__(self) -> None:
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[Message]:
        """A shallow copy of the history, oldest first."""
        return list(self._messages)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def add_user_message(self, text: str) -> Message:
        return self._append(Message(role="user", content=[TextPart(text)]))

    def add_user_image_message(
        self, text: str, image_base64: str, media_type: MediaType = "image/png"
    ) -> Message:
        return self._append(
            Message(role="user", content=[TextPart(text), ImagePart(image_base64, media_type)])
        )

    def add_assistant_message(self, message: Message) -> Message:
        if message.role != "assistant":
            raise ValueError(f"Expected an assistant message, got role={message.role!r}")
        return self._append(message)

    def add_tool_result(
        self,
        tool_use_id: str,
        result: str | list[TextPart | ImagePart],
        is_error: bool = False,
    ) -> Message:
        """Append a tool message answering ``tool_use_id``.

        The message holds exactly one ToolResultPart; a caption for image
        results travels inside that part. Raises ValueError if no earlier
        assistant message issued ``tool_use_id``.
        """
        if not self._has_tool_use(tool_use_id):
            raise ValueError(f"No tool invocation with id {tool_use_id!r} in history")
        return self._append(
            Message(role="tool", content=[ToolResultPart(tool_use_id, result, is_error)])
        )

    def _append(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def _has_tool_use(self, tool_use_id: str) -> bool:
        return any(
            part.id == tool_use_id
            for msg in self._messages
            if msg.role == "assistant"
            for part in msg.tool_uses
        )

    # ------------------------------------------------------------------
    # Rewrite
    # ------------------------------------------------------------------

    def clear(self) -> None:
        self._messages = []

    def compact(self, summary: str, keep_recent: int = 4) -> bool:
        """Replace all but the last ``keep_recent`` messages with a summary.

        Returns False (and changes nothing) when the history is already
        that short.
        """
        if len(self._messages) <= keep_recent:
            return False
        kept = self._messages[len(self._messages) - keep_recent :]
        self._messages = [
            Message(role="user", content=[TextPart(SUMMARY_PREFIX + summary)]),
            *kept,
        ]
        return True

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def estimate_context(self) -> ContextBreakdown:
        """Estimate token usage per bucket.

        Text costs ~1 token per 4 chars; every image costs a flat 1600 tokens
        in the bucket of the message that carries it.
        """
        ctx = ContextBreakdown(message_count=len(self._messages))

        for msg in self._messages:
            for part in msg.content:
                if isinstance(part, TextPart):
                    tokens = estimate_tokens(part.text)
                    if msg.role == "user":
                        ctx.user_tokens += tokens
                    elif msg.role == "assistant":
                        ctx.assistant_tokens += tokens
                    else:
                        ctx.tool_tokens += tokens
                elif isinstance(part, ImagePart):
                    ctx.image_count += 1
                    if msg.role == "user":
                        ctx.user_tokens += IMAGE_TOKENS
                    elif msg.role == "assistant":
                        ctx.assistant_tokens += IMAGE_TOKENS
                    else:
                        ctx.tool_tokens += IMAGE_TOKENS
                elif isinstance(part, ToolUsePart):
                    ctx.tool_tokens += estimate_tokens(json.dumps(part.input))
                elif isinstance(part, ToolResultPart):
                    if isinstance(part.content, str):
                        ctx.tool_tokens += estimate_tokens(part.content)
                        continue
                    for inner in part.content:
                        if isinstance(inner, ImagePart):
                            ctx.image_count += 1
                            ctx.tool_tokens += IMAGE_TOKENS
                        else:
                            ctx.tool_tokens += estimate_tokens(inner.text)

        return ctx
