"""Anthropic Messages API backend over direct httpx SSE streaming.

Maps the Messages API event stream onto StreamEvents:
  content_block_start(tool_use)   -> tool_start
  content_block_delta(text)       -> text_delta
  content_block_delta(input_json) -> tool_input_delta (id looked up by block index)
  message_delta.delta.stop_reason -> done
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from easel.config import Settings
from easel.errors import BackendError
from easel.llm.base import register_backend
from easel.llm.types import (
    ImagePart,
    Message,
    StreamEvent,
    TextPart,
    ToolResultPart,
    ToolSpec,
    ToolUsePart,
    done,
    text_delta,
    tool_input_delta,
    tool_start,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
_API_VERSION = "2023-06-01"
_RETRY_STATUS = (429, 500, 529)


def _image_source(img: ImagePart) -> dict[str, Any]:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": img.media_type, "data": img.data},
    }


def _to_block(part: Any) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return _image_source(part)
    if isinstance(part, ToolUsePart):
        return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
    if isinstance(part, ToolResultPart):
        content: str | list[dict[str, Any]]
        if isinstance(part.content, str):
            content = part.content
        else:
            content = [_to_block(p) for p in part.content]
        return {
            "type": "tool_result",
            "tool_use_id": part.tool_use_id,
            "content": content,
            "is_error": part.is_error,
        }
    raise TypeError(f"Unsupported content part: {part!r}")


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to API messages.

    Tool messages are sent as user turns, and consecutive turns with the same
    API role are merged so that all results of one round share a message.
    """
    out: list[dict[str, Any]] = []
    for msg in messages:
        role = "assistant" if msg.role == "assistant" else "user"
        blocks = [_to_block(p) for p in msg.content]
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})
    return out


def _map_stop_reason(reason: str | None) -> str:
    if reason == "tool_use":
        return "tool_use"
    if reason == "max_tokens":
        return "max_tokens"
    return "end_turn"


class _SSEState:
    """Per-response state: which tool id owns which content block."""

    def __init__(self) -> None:
        self.block_tools: dict[int, str] = {}


def parse_sse_event(data: dict[str, Any], state: _SSEState) -> StreamEvent | None:
    """Parse one Anthropic SSE data payload into a StreamEvent.

    Skips ping keepalives and block bookkeeping events. stop_reason lives in
    message_delta.delta, not message_start. In-stream error payloads (HTTP
    200 with an error body) raise BackendError.
    """
    event_type = data.get("type")

    if event_type == "error":
        error = data.get("error", {})
        raise BackendError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") == "tool_use":
            state.block_tools[data.get("index", 0)] = block.get("id", "")
            return tool_start(block.get("id", ""), block.get("name", ""))
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return text_delta(delta.get("text", ""))
        if delta.get("type") == "input_json_delta":
            tool_id = state.block_tools.get(data.get("index", 0), "")
            return tool_input_delta(tool_id, delta.get("partial_json", ""))
        return None

    if event_type == "message_delta":
        reason = data.get("delta", {}).get("stop_reason")
        if reason:
            return done(_map_stop_reason(reason))  # type: ignore[arg-type]

    return None


class AnthropicBackend:
    """Streams Claude responses via httpx against the Messages API."""

    name = "anthropic"
    supports_vision = True

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._model = settings.model or DEFAULT_MODEL
        self._http = http

    @property
    def model(self) -> str:
        return self._model

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            settings = self._settings
            headers = {
                "anthropic-version": _API_VERSION,
                "content-type": "application/json",
            }
            if settings.anthropic_api_key:
                headers["x-api-key"] = settings.anthropic_api_key
            else:
                logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
            self._http = httpx.AsyncClient(
                base_url=settings.api_base_url,
                headers=headers,
                timeout=httpx.Timeout(
                    connect=settings.api_timeout_connect,
                    read=settings.api_timeout_read,
                    write=10.0,
                    pool=10.0,
                ),
            )
        return self._http

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        system_prompt: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": to_anthropic_messages(messages),
            "stream": True,
        }
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        return payload

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(messages, tools, system_prompt)
        http = self._client()

        # One retry for rate limit / overload, only before anything was yielded
        for attempt in range(2):
            try:
                async with http.stream("POST", "/v1/messages", json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode(errors="replace")[:500]
                        if response.status_code in _RETRY_STATUS and attempt == 0:
                            retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                            logger.warning(
                                "API error %d, retrying in %.1fs: %s",
                                response.status_code,
                                retry_after,
                                body,
                            )
                            await asyncio.sleep(retry_after)
                            continue
                        raise BackendError(f"Anthropic API error ({response.status_code}): {body}")

                    state = _SSEState()
                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        event = parse_sse_event(json.loads(line[6:]), state)
                        if event:
                            yield event
                return
            except httpx.HTTPError as e:
                raise BackendError(f"HTTP error: {e}") from e


register_backend("anthropic", AnthropicBackend)
