"""LLM backends.

Importing this package registers every built-in backend.
"""

from easel.llm import anthropic, mock, ollama, openai  # noqa: F401  (registration)
from easel.llm.base import ChatBackend, create_backend, list_backends, register_backend
from easel.llm.types import (
    ContentPart,
    ImagePart,
    Message,
    StreamEvent,
    TextPart,
    ToolResultPart,
    ToolSpec,
    ToolUsePart,
)

__all__ = [
    "ChatBackend",
    "ContentPart",
    "ImagePart",
    "Message",
    "StreamEvent",
    "TextPart",
    "ToolResultPart",
    "ToolSpec",
    "ToolUsePart",
    "create_backend",
    "list_backends",
    "register_backend",
]
