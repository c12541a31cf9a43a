"""Scripted backend for tests and offline runs.

Returns queued canned responses, one per chat() call, and records every
call for assertions.
"""

from __future__ import annotations

import copy
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from easel.config import Settings
from easel.llm.base import register_backend
from easel.llm.types import (
    Message,
    StreamEvent,
    ToolSpec,
    done,
    text_delta,
    tool_input_delta,
    tool_start,
)


@dataclass
class MockToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class MockResponse:
    text: str = ""
    tool_calls: list[MockToolCall] = field(default_factory=list)
    stop_reason: str | None = None  # derived from tool_calls when None
    error: Exception | None = None  # raised after text is streamed


@dataclass
class MockCall:
    messages: list[Message]
    tools: list[ToolSpec]
    system_prompt: str


class MockBackend:
    name = "mock"
    supports_vision = True

    CHUNK_SIZE = 10

    def __init__(self, responses: list[MockResponse] | None = None, supports_vision: bool = True) -> None:
        self._responses = list(responses or [])
        self.supports_vision = supports_vision
        self.calls: list[MockCall] = []

    def enqueue(self, *responses: MockResponse) -> None:
        self._responses.extend(responses)

    @property
    def last_call(self) -> MockCall | None:
        return self.calls[-1] if self.calls else None

    async def close(self) -> None:
        pass

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(MockCall(copy.deepcopy(messages), list(tools), system_prompt))

        if not self._responses:
            yield text_delta("(no more mock responses)")
            yield done("end_turn")
            return

        response = self._responses.pop(0)
        for i in range(0, len(response.text), self.CHUNK_SIZE):
            yield text_delta(response.text[i : i + self.CHUNK_SIZE])

        if response.error is not None:
            raise response.error

        for tc in response.tool_calls:
            yield tool_start(tc.id, tc.name)
            yield tool_input_delta(tc.id, json.dumps(tc.input))

        stop_reason = response.stop_reason or ("tool_use" if response.tool_calls else "end_turn")
        yield done(stop_reason)  # type: ignore[arg-type]


def _from_settings(settings: Settings) -> MockBackend:
    return MockBackend()


register_backend("mock", _from_settings)
