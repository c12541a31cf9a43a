"""Tool registry and the built-in tool catalog."""

from __future__ import annotations

import os
from collections.abc import Callable

from easel.config import Settings
from easel.tools.files import register_file_tools
from easel.tools.registry import ToolHandler, ToolRegistry, ToolResult
from easel.tools.workspace import register_workspace_tools
from easel.workspace.session import SessionManager

__all__ = [
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
    "build_registry",
    "register_file_tools",
    "register_workspace_tools",
]


def build_registry(
    settings: Settings,
    sessions: SessionManager,
    get_export_dir: Callable[[], str] | None = None,
) -> ToolRegistry:
    """Registry with the full built-in catalog.

    File tools are scoped to ``settings.notes_dir`` (the working directory
    when unset).
    """
    registry = ToolRegistry()
    register_file_tools(registry, settings.notes_dir or os.getcwd())
    register_workspace_tools(
        registry,
        sessions,
        get_export_dir or (lambda: settings.export_dir),
        snapshot_timeout=settings.snapshot_timeout,
        export_timeout=settings.export_timeout,
    )
    return registry
