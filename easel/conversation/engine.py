"""Conversation engine -- runs turns against a streaming backend.

A turn is a loop of two states:

  Streaming    send history + tool catalog + system prompt to the backend,
               assemble its event stream into one assistant message
  Dispatching  invoke each tool call of that message in order, appending
               one tool message per call

and ends (Done) when the backend produces a message without tool calls.
Tool calls run one at a time because later calls may depend on side
effects of earlier ones and the transcript order must be deterministic.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

from easel.conversation.store import Conversation
from easel.errors import BackendError
from easel.llm.base import ChatBackend
from easel.llm.types import ImagePart, Message, StreamEvent, TextPart, ToolUsePart
from easel.tools.registry import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

ROUND_LIMIT_MESSAGE = "Tool call skipped: the tool round limit for this turn was reached."


@dataclass
class ToolCallRecord:
    """One dispatched tool call, for the caller's benefit."""

    tool_id: str
    tool_name: str
    arguments: dict[str, Any]
    result_text: str
    is_error: bool
    duration_ms: int


@dataclass
class TurnResult:
    text: str = ""  # text of the final assistant message
    responses: list[str] = field(default_factory=list)  # non-empty text of every round
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    backend_calls: int = 0
    stop_reason: str = ""


class MessageAssembler:
    """Folds one backend event stream into an assistant Message.

    Consecutive text fragments merge into one text part. Input fragments
    accumulate per call id; a fragment with an empty id belongs to the most
    recently started call. Tool calls keep the order in which they started.
    """

    def __init__(self) -> None:
        self._parts: list[TextPart | ToolUsePart] = []
        self._inputs: dict[str, list[str]] = {}
        self._last_tool_id: str | None = None
        self.stop_reason = ""

    def feed(self, event: StreamEvent) -> None:
        if event.type == "text_delta":
            if not event.text:
                return
            last = self._parts[-1] if self._parts else None
            if isinstance(last, TextPart):
                last.text += event.text
            else:
                self._parts.append(TextPart(event.text))
        elif event.type == "tool_start":
            self._parts.append(ToolUsePart(id=event.tool_id, name=event.tool_name))
            self._inputs[event.tool_id] = []
            self._last_tool_id = event.tool_id
        elif event.type == "tool_input_delta":
            tool_id = event.tool_id or self._last_tool_id
            if tool_id is None or tool_id not in self._inputs:
                logger.warning("Dropping input fragment for unknown tool call %r", event.tool_id)
                return
            self._inputs[tool_id].append(event.text)
        elif event.type == "done":
            self.stop_reason = event.stop_reason

    def build(self) -> Message:
        for part in self._parts:
            if isinstance(part, ToolUsePart):
                part.input = self._parse_input(part, "".join(self._inputs.get(part.id, [])))
        return Message(role="assistant", content=list(self._parts))

    @staticmethod
    def _parse_input(part: ToolUsePart, raw: str) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON input for tool %s (%s): %.200s", part.name, part.id, raw)
            return {}
        if not isinstance(value, dict):
            logger.warning("Non-object input for tool %s (%s)", part.name, part.id)
            return {}
        return value


class ConversationEngine:
    """Drives turns over one Conversation with one backend and tool registry."""

    def __init__(
        self,
        backend: ChatBackend,
        registry: ToolRegistry,
        conversation: Conversation | None = None,
        system_prompt: str = "",
        max_tool_rounds: int | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.conversation = conversation if conversation is not None else Conversation()
        self.system_prompt = system_prompt
        self.max_tool_rounds = max_tool_rounds
        self.last_turn: TurnResult | None = None
        self._in_turn = False

    @property
    def in_turn(self) -> bool:
        return self._in_turn

    async def run_turn(self, user_text: str, system_overlay: str = "") -> TurnResult:
        """Append ``user_text`` and run the turn to completion."""
        async for _ in self.stream_turn(user_text, system_overlay):
            pass
        assert self.last_turn is not None
        return self.last_turn

    async def stream_turn(
        self, user_text: str, system_overlay: str = ""
    ) -> AsyncGenerator[StreamEvent, None]:
        """Append ``user_text`` and run the turn, yielding events as they arrive.

        Yields text_delta and tool_start events from the backend, a tool_end
        event after each dispatched call and a final done event. Raises
        BackendError if the backend fails; the partial assistant message of
        the failing round is discarded. ``system_overlay`` is appended to the
        system prompt for this turn only.

        Raises RuntimeError, leaving the history untouched, if another turn
        is already running.
        """
        self._ensure_idle()
        self.conversation.add_user_message(user_text)
        async for event in self.continue_turn(system_overlay):
            yield event

    def _ensure_idle(self) -> None:
        if self._in_turn:
            raise RuntimeError("A turn is already running on this conversation")

    async def continue_turn(self, system_overlay: str = "") -> AsyncGenerator[StreamEvent, None]:
        """Run a turn over the current history without adding a user message."""
        self._ensure_idle()
        self._in_turn = True
        result = TurnResult()
        self.last_turn = result
        system_prompt = self.system_prompt + system_overlay
        try:
            rounds = 0
            while True:
                limited = self.max_tool_rounds is not None and rounds >= self.max_tool_rounds
                if limited:
                    logger.warning("Tool loop reached max_tool_rounds=%d", self.max_tool_rounds)
                tools = [] if limited else self.registry.definitions()

                assembler = MessageAssembler()
                async for event in self._stream_round(tools, assembler, system_prompt):
                    yield event
                result.backend_calls += 1

                message = assembler.build()
                if not message.content:
                    logger.warning("Backend %s returned an empty message", getattr(self.backend, "name", "?"))
                    result.stop_reason = assembler.stop_reason
                    break
                self.conversation.add_assistant_message(message)
                if message.text:
                    result.responses.append(message.text)
                result.stop_reason = assembler.stop_reason

                calls = message.tool_uses
                if not calls:
                    result.text = message.text
                    break

                if limited:
                    for call in calls:
                        self.conversation.add_tool_result(call.id, ROUND_LIMIT_MESSAGE, is_error=True)
                    result.text = message.text
                    break

                for call in calls:
                    record = await self._dispatch(call)
                    result.tool_calls.append(record)
                    yield StreamEvent(
                        type="tool_end",
                        tool_id=call.id,
                        tool_name=call.name,
                        text=record.result_text,
                        is_error=record.is_error,
                    )
                rounds += 1
        finally:
            self._in_turn = False

        yield StreamEvent(type="done", stop_reason=result.stop_reason)

    async def _stream_round(
        self, tools: list, assembler: MessageAssembler, system_prompt: str
    ) -> AsyncGenerator[StreamEvent, None]:
        history = self.conversation.messages
        try:
            async for event in self.backend.chat(history, tools, system_prompt):
                assembler.feed(event)
                if event.type in ("text_delta", "tool_start"):
                    yield event
        except BackendError:
            raise
        except Exception as e:
            logger.error("Backend %s failed: %s", getattr(self.backend, "name", "?"), e)
            raise BackendError(str(e) or type(e).__name__) from e

    async def _dispatch(self, call: ToolUsePart) -> ToolCallRecord:
        start = time.monotonic()
        try:
            outcome = await self.registry.invoke(call.name, call.input)
        except Exception as e:
            logger.exception("Tool registry raised for %s", call.name)
            outcome = ToolResult.error(f"Tool error: {e}")
        duration_ms = int((time.monotonic() - start) * 1000)

        text = outcome.joined_text
        images = outcome.images
        if images:
            content: list[TextPart | ImagePart] = list(images)
            if text:
                content.append(TextPart(text))
            self.conversation.add_tool_result(call.id, content, outcome.is_error)
        else:
            self.conversation.add_tool_result(call.id, text, outcome.is_error)

        logger.info(
            "Tool %s (%s) finished in %dms%s",
            call.name,
            call.id,
            duration_ms,
            " [error]" if outcome.is_error else "",
        )
        return ToolCallRecord(
            tool_id=call.id,
            tool_name=call.name,
            arguments=call.input,
            result_text=text,
            is_error=outcome.is_error,
            duration_ms=duration_ms,
        )
