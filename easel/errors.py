"""Exception hierarchy for easel.

One class per failure mode. Broker and session errors are raised to the
tool or command that issued the call, which turns them into short
human-readable strings. Tool failures never cross the registry boundary.
"""

from __future__ import annotations


class EaselError(Exception):
    """Base exception for all easel errors."""


class NotConnected(EaselError):
    """The peer broker has no companion client attached."""

    def __init__(self, message: str = "No canvas client connected") -> None:
        super().__init__(message)


class RequestTimeout(EaselError):
    """A correlated peer request exceeded its deadline."""

    def __init__(self, request_id: str, timeout: float) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout:g}s")


class NoActiveSession(EaselError):
    """A session-scoped call was made while no workspace is open."""

    def __init__(self) -> None:
        super().__init__("No canvas is open. Use /canvas to open one.")


class PeerProtocolError(EaselError):
    """An envelope could not be built or understood."""


class ToolExecutionError(EaselError):
    """A tool failed. Only surfaced where a raising contract is required (MCP)."""


class BackendError(EaselError):
    """The streaming language-model backend failed during a turn."""


class UnknownBackendError(EaselError):
    """No backend registered under the requested name."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f'Unknown LLM backend "{name}". Available: {", ".join(available)}'
        )
