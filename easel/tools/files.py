"""File tools over the notes directory: read_file, list_files, search_notes.

Every path is resolved under the notes directory; anything that escapes it
is rejected. File I/O runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from pathlib import Path
from typing import Any

from pypdf import PdfReader

from easel.llm.types import ImagePart, TextPart
from easel.tools.registry import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB of text
_MAX_IMAGE_SIZE = 5 * 1024 * 1024
_MAX_SEARCH_FILES = 10
_MAX_SNIPPETS = 3
_SEARCH_EXTENSIONS = (".md", ".txt")
_IMAGE_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}
_WIKILINK_RE = re.compile(r"(!)?\[\[([^\]]+)\]\]")


def _validate_path(path_str: str, notes_dir: str) -> Path:
    """Resolve ``path_str`` under ``notes_dir``.

    Raises ValueError if the path escapes the notes directory.
    """
    root = Path(notes_dir).expanduser().resolve()
    candidate = Path(path_str).expanduser()
    target = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
    if not target.is_relative_to(root):
        raise ValueError(f"Path '{path_str}' is outside the notes directory '{notes_dir}'.")
    return target


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def extract_pdf_text(path: Path) -> str:
    reader = PdfReader(str(path))
    chunks = []
    for index, page in enumerate(reader.pages):
        try:
            chunk = (page.extract_text() or "").strip()
        except Exception as e:
            logger.debug("Failed to extract text from page %d of %s: %s", index, path, e)
            continue
        if chunk:
            chunks.append(chunk)
    return "\n\n".join(chunks) or "(No extractable text found in PDF.)"


def extract_wikilinks(content: str) -> list[tuple[str, bool]]:
    """Unique ``[[target]]`` links in order, as (target, is_embed)."""
    seen: set[str] = set()
    links = []
    for match in _WIKILINK_RE.finditer(content):
        if match.group(0) in seen:
            continue
        seen.add(match.group(0))
        links.append((match.group(2), match.group(1) == "!"))
    return links


def _link_footer(content: str, root: Path) -> str:
    links = extract_wikilinks(content)
    if not links:
        return ""
    index: dict[str, str] = {}
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        rel = p.relative_to(root).as_posix()
        index.setdefault(p.stem.lower(), rel)
        index.setdefault(p.name.lower(), rel)
    lines = ["", "---", "Linked files:"]
    for name, is_embed in links:
        kind = "embed" if is_embed else "link"
        lines.append(f"- [{kind}] [[{name}]] -> {index.get(name.lower(), '(not found)')}")
    return "\n".join(lines)


def _search_file(path: Path, query: str) -> list[str]:
    lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    snippets = []
    for i, line in enumerate(lines):
        if query in line.lower():
            snippets.append("\n".join(lines[max(0, i - 1) : i + 2]))
            if len(snippets) == _MAX_SNIPPETS:
                break
    return snippets


def _search_notes_sync(root: Path, query: str) -> list[tuple[str, list[str]]]:
    results = []
    for path in sorted(root.rglob("*")):
        if path.suffix.lower() not in _SEARCH_EXTENSIONS or not path.is_file():
            continue
        try:
            snippets = _search_file(path, query)
        except OSError as e:
            logger.debug("Skipping unreadable note %s: %s", path, e)
            continue
        if snippets:
            results.append((path.relative_to(root).as_posix(), snippets))
            if len(results) == _MAX_SEARCH_FILES:
                break
    return results


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(path: str, *, _notes_dir: str) -> ToolResult:
    """Read a text, PDF or image file under the notes directory."""
    try:
        target = _validate_path(path, _notes_dir)
    except ValueError as e:
        return ToolResult.error(str(e))

    if not target.exists():
        return ToolResult.error(f"File not found: {path}")
    if not target.is_file():
        return ToolResult.error(f"Not a file: {path}")

    suffix = target.suffix.lower()
    size = target.stat().st_size

    if suffix == ".pdf":
        text = await asyncio.to_thread(extract_pdf_text, target)
        return ToolResult.text(text)

    if suffix in _IMAGE_TYPES:
        if size > _MAX_IMAGE_SIZE:
            return ToolResult.error(f"Image too large: {size:,} bytes (limit: {_MAX_IMAGE_SIZE:,} bytes)")
        data = await asyncio.to_thread(target.read_bytes)
        return ToolResult(
            content=[
                ImagePart(base64.b64encode(data).decode("ascii"), _IMAGE_TYPES[suffix]),
                TextPart(f"Image file: {path}"),
            ]
        )

    if size > _MAX_FILE_SIZE:
        return ToolResult.error(f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)")

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if suffix == ".md":
        root = Path(_notes_dir).expanduser().resolve()
        content += await asyncio.to_thread(_link_footer, content, root)
    return ToolResult.text(content if content else "(empty file)")


async def list_files_tool(path: str = ".", extension: str | None = None, *, _notes_dir: str) -> ToolResult:
    """Recursively list files under ``path``, optionally filtered by extension."""
    try:
        target = _validate_path(path, _notes_dir)
    except ValueError as e:
        return ToolResult.error(str(e))
    if not target.is_dir():
        return ToolResult.error(f"Not a directory: {path}")

    def _walk() -> list[str]:
        return sorted(
            p.relative_to(target).as_posix()
            for p in target.rglob("*")
            if p.is_file() and (not extension or p.name.endswith(extension))
        )

    entries = await asyncio.to_thread(_walk)
    return ToolResult.text("\n".join(entries) or "(empty directory)")


async def search_notes_tool(query: str, *, _notes_dir: str) -> ToolResult:
    """Case-insensitive keyword search across .md and .txt notes."""
    needle = query.strip().lower()
    if not needle:
        return ToolResult.error("Search query must not be empty")
    root = Path(_notes_dir).expanduser().resolve()
    if not root.is_dir():
        return ToolResult.error(f"Notes directory not found: {_notes_dir}")

    results = await asyncio.to_thread(_search_notes_sync, root, needle)
    if not results:
        return ToolResult.text(f'No results found for "{query}"')

    text = "\n\n---\n\n".join(
        f"### {rel}\n" + "\n...\n".join(snippets) for rel, snippets in results
    )
    return ToolResult.text(text)


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Read a file from the notes directory. Text and markdown are returned as-is "
        "(markdown with its [[wikilinks]] resolved), PDFs as extracted text, images as images."
    ),
    "properties": {
        "path": {"type": "string", "description": "File path, relative to the notes directory"},
    },
    "required": ["path"],
}

_LIST_FILES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List files in a directory of the notes, recursively, optionally filtered by extension.",
    "properties": {
        "path": {"type": "string", "description": "Directory to list (default: the notes root)", "default": "."},
        "extension": {"type": "string", "description": "Only list files ending in this extension, e.g. '.md'"},
    },
}

_SEARCH_NOTES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Keyword search across .md and .txt notes. Returns matching file paths with text snippets.",
    "properties": {
        "query": {"type": "string", "description": "Keyword or phrase (case-insensitive)"},
    },
    "required": ["query"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_file_tools(registry: ToolRegistry, notes_dir: str) -> None:
    """Register read_file, list_files and search_notes scoped to ``notes_dir``."""

    async def _read_file(path: str) -> ToolResult:
        return await read_file_tool(path, _notes_dir=notes_dir)

    async def _list_files(path: str = ".", extension: str | None = None) -> ToolResult:
        return await list_files_tool(path, extension, _notes_dir=notes_dir)

    async def _search_notes(query: str) -> ToolResult:
        return await search_notes_tool(query, _notes_dir=notes_dir)

    registry.register("read_file", _read_file, _READ_FILE_SCHEMA)
    registry.register("list_files", _list_files, _LIST_FILES_SCHEMA)
    registry.register("search_notes", _search_notes, _SEARCH_NOTES_SCHEMA)
