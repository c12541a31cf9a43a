"""OpenAI chat-completions backend over direct httpx SSE streaming.

Works with any OpenAI-compatible endpoint (set EASEL_OPENAI_BASE_URL).
Tool call fragments arrive keyed by index; the first fragment of each call
carries its id and name.
"""

from __future__ import annotations

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

DEFAULT_MODEL = "gpt-4o"


def _image_url(img: ImagePart) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": f"data:{img.media_type};base64,{img.data}"}}


def to_openai_messages(messages: list[Message], system_prompt: str) -> list[dict[str, Any]]:
    """Convert history to chat-completions messages.

    Tool messages cannot carry images, so an image result is answered with
    its caption (or a placeholder) and the images of the whole round follow
    in one user message after the last tool reply.
    """
    out: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    pending_images: list[dict[str, Any]] = []

    def flush_images() -> None:
        if pending_images:
            out.append({"role": "user", "content": list(pending_images)})
            pending_images.clear()

    for msg in messages:
        if msg.role != "tool":
            flush_images()
        if msg.role == "assistant":
            calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.input)},
                }
                for p in msg.content
                if isinstance(p, ToolUsePart)
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
        elif msg.role == "tool":
            for p in msg.content:
                if not isinstance(p, ToolResultPart):
                    continue
                if isinstance(p.content, str):
                    out.append({"role": "tool", "tool_call_id": p.tool_use_id, "content": p.content})
                    continue
                caption = "\n".join(x.text for x in p.content if isinstance(x, TextPart))
                out.append(
                    {"role": "tool", "tool_call_id": p.tool_use_id, "content": caption or "[image]"}
                )
                pending_images.extend(_image_url(x) for x in p.content if isinstance(x, ImagePart))
        else:
            parts: list[dict[str, Any]] = []
            for p in msg.content:
                if isinstance(p, TextPart):
                    parts.append({"type": "text", "text": p.text})
                elif isinstance(p, ImagePart):
                    parts.append(_image_url(p))
            out.append({"role": "user", "content": parts})
    flush_images()
    return out


def _map_finish_reason(reason: str) -> str:
    if reason == "tool_calls":
        return "tool_use"
    if reason == "length":
        return "max_tokens"
    return "end_turn"


class OpenAIBackend:
    """Streams chat completions via httpx."""

    name = "openai"
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
            headers = {"content-type": "application/json"}
            if settings.openai_api_key:
                headers["authorization"] = f"Bearer {settings.openai_api_key}"
            else:
                logger.warning("OPENAI_API_KEY is not set -- API calls may fail")
            self._http = httpx.AsyncClient(
                base_url=settings.openai_base_url,
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
            "messages": to_openai_messages(messages, system_prompt),
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
        index_ids: dict[int, str] = {}
        try:
            async with self._client().stream("POST", "/v1/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    raise BackendError(f"OpenAI API error ({response.status_code}): {body}")

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    raw = line[6:].strip()
                    if raw == "[DONE]":
                        break
                    chunk = json.loads(raw)
                    if "error" in chunk:
                        raise BackendError(str(chunk["error"].get("message", chunk["error"])))
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}

                    if delta.get("content"):
                        yield text_delta(delta["content"])

                    for tc in delta.get("tool_calls") or []:
                        index = tc.get("index", 0)
                        function = tc.get("function") or {}
                        if tc.get("id"):
                            index_ids[index] = tc["id"]
                            yield tool_start(tc["id"], function.get("name", ""))
                        if function.get("arguments"):
                            yield tool_input_delta(index_ids.get(index, ""), function["arguments"])

                    if choice.get("finish_reason"):
                        yield done(_map_finish_reason(choice["finish_reason"]))  # type: ignore[arg-type]
        except httpx.HTTPError as e:
            raise BackendError(f"HTTP error: {e}") from e


register_backend("openai", OpenAIBackend)
