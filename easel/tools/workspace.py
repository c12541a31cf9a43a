"""Canvas tools: read_canvas, export_pdf, save_canvas.

The broker is looked up through the session manager on every call, so
opening another canvas rebinds these tools without re-registering them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from easel.errors import EaselError, NoActiveSession
from easel.llm.types import ImagePart, TextPart
from easel.tools.registry import ToolRegistry, ToolResult
from easel.workspace.broker import EXPORT_TIMEOUT, SNAPSHOT_TIMEOUT
from easel.workspace.pdf import export_pdf_to_file
from easel.workspace.session import SessionManager

logger = logging.getLogger(__name__)


def resolve_export_path(output_path: str | None, export_dir: str, canvas_name: str) -> Path:
    """Where export_pdf writes: ``output_path`` (relative to ``export_dir``) or ``<canvas>.pdf``."""
    base = Path(export_dir).expanduser()
    if not output_path:
        return base / f"{canvas_name}.pdf"
    target = Path(output_path).expanduser()
    if not target.is_absolute():
        target = base / target
    if target.suffix.lower() != ".pdf":
        target = target.with_name(target.name + ".pdf")
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_canvas_tool(
    page: str | None = None,
    *,
    _sessions: SessionManager,
    _timeout: float = SNAPSHOT_TIMEOUT,
) -> ToolResult:
    """Capture a PNG snapshot of a canvas page from the companion device."""
    broker = _sessions.broker
    if broker is None:
        return ToolResult.error(str(NoActiveSession()))
    try:
        response = await broker.issue_snapshot(page, _timeout)
    except EaselError as e:
        return ToolResult.error(f"Error capturing canvas: {e}")
    return ToolResult(
        content=[
            ImagePart(response.png, "image/png"),
            TextPart(f"Snapshot of page: {response.page or 'current'}"),
        ]
    )


async def export_pdf_tool(
    output_path: str | None = None,
    *,
    _sessions: SessionManager,
    _export_dir: str,
    _timeout: float = EXPORT_TIMEOUT,
) -> ToolResult:
    """Export every canvas page into one A4 PDF."""
    info = _sessions.active_info
    if info is None:
        return ToolResult.error(str(NoActiveSession()))
    try:
        response = await _sessions.export_pages(_timeout)
    except EaselError as e:
        return ToolResult.error(f"Error exporting PDF: {e}")
    if not response.pages:
        return ToolResult.error("Error exporting PDF: the canvas has no pages")

    target = resolve_export_path(output_path, _export_dir, info.name)
    path = await asyncio.to_thread(export_pdf_to_file, response.pages, target)
    return ToolResult.text(f"PDF exported to: {path} ({len(response.pages)} page(s))")


async def save_canvas_tool(*, _sessions: SessionManager) -> ToolResult:
    """Persist the open canvas to disk."""
    try:
        await _sessions.save()
    except NoActiveSession as e:
        return ToolResult.error(str(e))
    info = _sessions.active_info
    return ToolResult.text(f"Canvas '{info.name if info else ''}' saved.")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_READ_CANVAS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Capture a PNG snapshot of a canvas page from the user's drawing device. "
        "Returns the image for visual analysis of handwritten work."
    ),
    "properties": {
        "page": {"type": "string", "description": "Page to snapshot (omit for the current page)"},
    },
}

_EXPORT_PDF_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Export all canvas pages as an A4 PDF file. Returns the file path.",
    "properties": {
        "output_path": {
            "type": "string",
            "description": "Output file path (defaults to <canvas name>.pdf in the export directory)",
        },
    },
}

_SAVE_CANVAS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Persist the current canvas state to disk.",
    "properties": {},
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_workspace_tools(
    registry: ToolRegistry,
    sessions: SessionManager,
    get_export_dir: Callable[[], str],
    snapshot_timeout: float = SNAPSHOT_TIMEOUT,
    export_timeout: float = EXPORT_TIMEOUT,
) -> None:
    """Register read_canvas, export_pdf and save_canvas bound to ``sessions``."""

    async def _read_canvas(page: str | None = None) -> ToolResult:
        return await read_canvas_tool(page, _sessions=sessions, _timeout=snapshot_timeout)

    async def _export_pdf(output_path: str | None = None) -> ToolResult:
        return await export_pdf_tool(
            output_path,
            _sessions=sessions,
            _export_dir=get_export_dir(),
            _timeout=export_timeout,
        )

    async def _save_canvas() -> ToolResult:
        return await save_canvas_tool(_sessions=sessions)

    registry.register("read_canvas", _read_canvas, _READ_CANVAS_SCHEMA)
    registry.register("export_pdf", _export_pdf, _EXPORT_PDF_SCHEMA)
    registry.register("save_canvas", _save_canvas, _SAVE_CANVAS_SCHEMA)
