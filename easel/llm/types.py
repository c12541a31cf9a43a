"""Shared message and streaming types.

Every backend speaks these types; vendor formats are produced and parsed
inside each adapter only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["user", "assistant", "tool"]
MediaType = Literal["image/png", "image/jpeg", "image/webp"]
StopReason = Literal["end_turn", "tool_use", "max_tokens"]


@dataclass
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ImagePart:
    """An image payload. ``data`` is base64-encoded."""

    data: str
    media_type: MediaType = "image/png"
    type: Literal["image"] = "image"


@dataclass
class ToolUsePart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultPart:
    """Answer to one tool call. List content holds images plus an optional caption."""

    tool_use_id: str
    content: str | list[TextPart | ImagePart]
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentPart = Union[TextPart, ImagePart, ToolUsePart, ToolResultPart]


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: list[ContentPart] = field(default_factory=list)

    @property
    def tool_uses(self) -> list[ToolUsePart]:
        return [p for p in self.content if isinstance(p, ToolUsePart)]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass
class ToolSpec:
    """Tool definition as handed to a backend."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class StreamEvent:
    """A single event from a streaming backend response.

    Backends emit ``text_delta``, ``tool_start``, ``tool_input_delta`` and
    ``done``. The conversation engine additionally emits ``tool_end`` to its
    own caller after each dispatched call.
    """

    type: str  # text_delta, tool_start, tool_input_delta, done, tool_end
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str = ""
    is_error: bool = False


def text_delta(text: str) -> StreamEvent:
    return StreamEvent(type="text_delta", text=text)


def tool_start(tool_id: str, name: str) -> StreamEvent:
    return StreamEvent(type="tool_start", tool_id=tool_id, tool_name=name)


def tool_input_delta(tool_id: str, partial: str) -> StreamEvent:
    return StreamEvent(type="tool_input_delta", tool_id=tool_id, text=partial)


def done(stop_reason: StopReason) -> StreamEvent:
    return StreamEvent(type="done", stop_reason=stop_reason)
