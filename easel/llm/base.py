"""Backend capability interface and registry.

The conversation engine depends only on ``ChatBackend.chat``; one adapter
per vendor turns its wire protocol into StreamEvents.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from typing import Protocol, runtime_checkable

from easel.config import Settings
from easel.errors import UnknownBackendError
from easel.llm.types import Message, StreamEvent, ToolSpec

logger = logging.getLogger(__name__)


@runtime_checkable
class ChatBackend(Protocol):
    name: str
    supports_vision: bool

    def chat(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]: ...


BackendFactory = Callable[[Settings], ChatBackend]

_backends: dict[str, BackendFactory] = {}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Register a backend factory under ``name``. Later registrations win."""
    _backends[name] = factory
    logger.debug("Registered backend '%s'", name)


def create_backend(name: str, settings: Settings) -> ChatBackend:
    factory = _backends.get(name)
    if factory is None:
        raise UnknownBackendError(name, list_backends())
    return factory(settings)


def list_backends() -> list[str]:
    return sorted(_backends)
