"""Tool registry: named tools with schemas, invoked by the conversation engine.

Each handler is an async callable that accepts the tool input as **kwargs
and returns a ToolResult. The registry never raises past invoke():
unknown tools, bad arguments and handler exceptions all come back as
error-flagged results so the engine can always append a tool message.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from easel.llm.types import ImagePart, TextPart, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable["ToolResult"]]


@dataclass
class ToolResult:
    content: list[Union[TextPart, ImagePart]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[TextPart(text)])

    @classmethod
    def error(cls, text: str) -> ToolResult:
        return cls(content=[TextPart(text)], is_error=True)

    @property
    def joined_text(self) -> str:
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def images(self) -> list[ImagePart]:
        return [p for p in self.content if isinstance(p, ImagePart)]


class ToolRegistry:
    """Stateless lookup-and-invoke surface over a fixed tool catalog."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema.

        The schema's ``description`` key doubles as the tool description.
        """
        self._handlers[name] = handler
        self._schemas[name] = schema

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return list(self._handlers)

    def definitions(self) -> list[ToolSpec]:
        """Return all tool definitions in registration order."""
        return [
            ToolSpec(
                name=name,
                description=schema.get("description", ""),
                input_schema={k: v for k, v in schema.items() if k != "description"},
            )
            for name, schema in self._schemas.items()
        ]

    async def invoke(self, name: str, args: dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(name)
        if not handler:
            return ToolResult.error(f"Unknown tool: {name}")
        if not isinstance(args, dict):
            return ToolResult.error(f"Invalid input for {name}: expected an object")
        try:
            inspect.signature(handler).bind(**args)
        except TypeError as e:
            logger.warning("Bad arguments for tool %s: %s", name, e)
            return ToolResult.error(f"Invalid arguments for {name}: {e}")
        try:
            return await handler(**args)
        except Exception as e:
            logger.exception("Tool %s failed", name)
            return ToolResult.error(f"Tool error: {e}")
