"""Ollama backend for local models over httpx NDJSON streaming.

POST /api/chat with ``stream: true`` answers with one JSON object per line.
Tool calls arrive whole (no argument fragments) and without ids, so each
call gets a generated id. Set EASEL_OLLAMA_BASE_URL or OLLAMA_HOST to
reach a non-local server.
"""

from __future__ import annotations

import json
import logging
import uuid
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


def to_ollama_messages(messages: list[Message], system_prompt: str) -> list[dict[str, Any]]:
    """Convert history to /api/chat messages. Images ride in ``images``."""
    out: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg.role == "tool":
            for p in msg.content:
                if not isinstance(p, ToolResultPart):
                    continue
                entry: dict[str, Any] = {"role": "tool"}
                if isinstance(p.content, str):
                    entry["content"] = p.content
                else:
                    caption = "\n".join(x.text for x in p.content if isinstance(x, TextPart))
                    entry["content"] = caption or "[image]"
                    entry["images"] = [x.data for x in p.content if isinstance(x, ImagePart)]
                out.append(entry)
            continue

        entry = {"role": msg.role, "content": msg.text}
        images = [p.data for p in msg.content if isinstance(p, ImagePart)]
        if images:
            entry["images"] = images
        calls = [
            {"function": {"name": p.name, "arguments": p.input}}
            for p in msg.content
            if isinstance(p, ToolUsePart)
        ]
        if calls:
            entry["tool_calls"] = calls
        out.append(entry)
    return out


class OllamaBackend:
    """Streams chat responses from a local Ollama server via httpx."""

    name = "ollama"
    supports_vision = True

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        if not settings.model:
            raise BackendError(
                "Ollama requires a model name. Set EASEL_MODEL or use /model ollama <model>."
            )
        self._settings = settings
        self._model = settings.model
        self._http = http

    @property
    def model(self) -> str:
        return self._model

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            settings = self._settings
            self._http = httpx.AsyncClient(
                base_url=settings.ollama_base_url,
                headers={"content-type": "application/json"},
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
            "messages": to_ollama_messages(messages, system_prompt),
            "options": {"num_predict": self._settings.max_tokens},
            "stream": True,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
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
        saw_tool_call = False
        try:
            async with self._client().stream("POST", "/api/chat", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    raise BackendError(f"Ollama error ({response.status_code}): {body}")

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    if "error" in chunk:
                        raise BackendError(f"Ollama error: {chunk['error']}")
                    message = chunk.get("message") or {}

                    if message.get("content"):
                        yield text_delta(message["content"])

                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function") or {}
                        call_id = tc.get("id") or f"ollama-{uuid.uuid4().hex[:12]}"
                        saw_tool_call = True
                        yield tool_start(call_id, function.get("name", ""))
                        yield tool_input_delta(call_id, json.dumps(function.get("arguments") or {}))

                    if chunk.get("done"):
                        if saw_tool_call:
                            yield done("tool_use")
                        elif chunk.get("done_reason") == "length":
                            yield done("max_tokens")
                        else:
                            yield done("end_turn")
        except httpx.ConnectError as e:
            raise BackendError(
                f"Cannot connect to Ollama at {self._settings.ollama_base_url}. Start it with: ollama serve"
            ) from e
        except httpx.HTTPError as e:
            raise BackendError(f"HTTP error: {e}") from e


register_backend("ollama", OllamaBackend)
