"""Tests for the tool registry and the built-in catalog.

File tools run against a tmp_path notes directory. Canvas tools run
against a real SessionManager with an in-memory transport and a FakePeer
answered by hand.
"""

import asyncio
import base64
import io
import json

import pytest
from PIL import Image

from easel.tools import build_registry
from easel.tools.files import (
    extract_wikilinks,
    list_files_tool,
    read_file_tool,
    search_notes_tool,
)
from easel.tools.registry import ToolRegistry, ToolResult
from easel.tools.workspace import resolve_export_path
from easel.workspace.session import SessionManager

from tests.conftest import FakePeer, FakeTransport


def _png_b64(size=(40, 20), color=(255, 0, 0)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def _registry(self) -> ToolRegistry:
        registry = ToolRegistry()

        async def add(a: int, b: int = 0) -> ToolResult:
            return ToolResult.text(str(a + b))

        async def explode() -> ToolResult:
            raise OSError("permission denied")

        registry.register(
            "add",
            add,
            {"type": "object", "description": "Add numbers", "properties": {"a": {"type": "integer"}}},
        )
        registry.register("explode", explode, {"type": "object", "description": "Boom", "properties": {}})
        return registry

    def test_definitions_split_description_from_schema(self):
        specs = self._registry().definitions()
        assert [s.name for s in specs] == ["add", "explode"]
        assert specs[0].description == "Add numbers"
        assert "description" not in specs[0].input_schema
        assert specs[0].input_schema["properties"] == {"a": {"type": "integer"}}

    @pytest.mark.asyncio
    async def test_invoke_success(self):
        result = await self._registry().invoke("add", {"a": 2, "b": 3})
        assert result.is_error is False
        assert result.joined_text == "5"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await self._registry().invoke("missing", {})
        assert result.is_error is True
        assert result.joined_text == "Unknown tool: missing"

    @pytest.mark.asyncio
    async def test_bad_arguments(self):
        result = await self._registry().invoke("add", {"c": 1})
        assert result.is_error is True
        assert "Invalid arguments for add" in result.joined_text

    @pytest.mark.asyncio
    async def test_non_object_input(self):
        result = await self._registry().invoke("add", ["a"])  # type: ignore[arg-type]
        assert result.is_error is True

    @pytest.mark.asyncio
    async def test_handler_exception_never_escapes(self):
        result = await self._registry().invoke("explode", {})
        assert result.is_error is True
        assert result.joined_text == "Tool error: permission denied"

    @pytest.mark.asyncio
    async def test_type_error_inside_handler_is_a_tool_error(self):
        registry = ToolRegistry()

        async def concat(label: str) -> ToolResult:
            return ToolResult.text(label + 1)

        registry.register("concat", concat, {"type": "object", "description": "Concat", "properties": {}})

        result = await registry.invoke("concat", {"label": "x"})
        assert result.is_error is True
        assert result.joined_text.startswith("Tool error: ")
        assert "Invalid arguments" not in result.joined_text

    def test_build_registry_catalog(self, settings):
        registry = build_registry(settings, SessionManager(settings))
        assert registry.names() == [
            "read_file",
            "list_files",
            "search_notes",
            "read_canvas",
            "export_pdf",
            "save_canvas",
        ]


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


class TestReadFile:
    @pytest.mark.asyncio
    async def test_reads_text(self, notes_dir):
        (notes_dir / "a.txt").write_text("hello notes")
        result = await read_file_tool("a.txt", _notes_dir=str(notes_dir))
        assert result.joined_text == "hello notes"

    @pytest.mark.asyncio
    async def test_markdown_gets_link_footer(self, notes_dir):
        (notes_dir / "Limits.md").write_text("# Limits")
        (notes_dir / "index.md").write_text("See [[Limits]] and ![[Missing]]")

        result = await read_file_tool("index.md", _notes_dir=str(notes_dir))

        text = result.joined_text
        assert "Linked files:" in text
        assert "- [link] [[Limits]] -> Limits.md" in text
        assert "- [embed] [[Missing]] -> (not found)" in text

    @pytest.mark.asyncio
    async def test_rejects_escape(self, notes_dir):
        result = await read_file_tool("../secret.txt", _notes_dir=str(notes_dir))
        assert result.is_error is True
        assert "outside the notes directory" in result.joined_text

    @pytest.mark.asyncio
    async def test_missing_file(self, notes_dir):
        result = await read_file_tool("nope.md", _notes_dir=str(notes_dir))
        assert result.is_error is True
        assert "File not found" in result.joined_text

    @pytest.mark.asyncio
    async def test_image_file_returns_image(self, notes_dir):
        (notes_dir / "fig.png").write_bytes(base64.b64decode(_png_b64()))
        result = await read_file_tool("fig.png", _notes_dir=str(notes_dir))
        assert len(result.images) == 1
        assert result.images[0].media_type == "image/png"

    @pytest.mark.asyncio
    async def test_pdf_text_is_extracted(self, notes_dir, monkeypatch):
        (notes_dir / "problems.pdf").write_bytes(b"%PDF-1.4 stub")
        monkeypatch.setattr("easel.tools.files.extract_pdf_text", lambda path: "Problem 1: integrate x")

        result = await read_file_tool("problems.pdf", _notes_dir=str(notes_dir))
        assert result.joined_text == "Problem 1: integrate x"


class TestListFiles:
    @pytest.mark.asyncio
    async def test_recursive_listing_with_filter(self, notes_dir):
        (notes_dir / "sub").mkdir()
        (notes_dir / "a.md").write_text("a")
        (notes_dir / "sub" / "b.md").write_text("b")
        (notes_dir / "c.pdf").write_bytes(b"x")

        result = await list_files_tool(".", ".md", _notes_dir=str(notes_dir))
        assert result.joined_text.splitlines() == ["a.md", "sub/b.md"]

    @pytest.mark.asyncio
    async def test_empty_directory(self, notes_dir):
        result = await list_files_tool(_notes_dir=str(notes_dir))
        assert result.joined_text == "(empty directory)"


class TestSearchNotes:
    @pytest.mark.asyncio
    async def test_snippets_with_context(self, notes_dir):
        (notes_dir / "calc.md").write_text("intro\nThe Chain Rule says\noutro\nunrelated")
        (notes_dir / "skip.pdf").write_text("chain rule")

        result = await search_notes_tool("chain rule", _notes_dir=str(notes_dir))

        text = result.joined_text
        assert text.startswith("### calc.md")
        assert "intro\nThe Chain Rule says\noutro" in text
        assert "unrelated" not in text
        assert "skip.pdf" not in text

    @pytest.mark.asyncio
    async def test_limits_snippets_and_files(self, notes_dir):
        for i in range(12):
            (notes_dir / f"n{i:02d}.txt").write_text("\n".join(["key"] * 5))

        result = await search_notes_tool("KEY", _notes_dir=str(notes_dir))

        sections = result.joined_text.split("\n\n---\n\n")
        assert len(sections) == 10
        assert sections[0].count("\n...\n") == 2

    @pytest.mark.asyncio
    async def test_no_results(self, notes_dir):
        (notes_dir / "a.md").write_text("nothing here")
        result = await search_notes_tool("quantum", _notes_dir=str(notes_dir))
        assert result.is_error is False
        assert result.joined_text == 'No results found for "quantum"'

    def test_extract_wikilinks_dedupes(self):
        assert extract_wikilinks("[[A]] [[A]] ![[B]]") == [("A", False), ("B", True)]


# ---------------------------------------------------------------------------
# Canvas tools
# ---------------------------------------------------------------------------


def _make_sessions(settings):
    log: list[str] = []

    async def factory(name, broker, snapshot_path):
        return FakeTransport(name, log)

    return SessionManager(settings, transport_factory=factory), log


async def _answer(peer: FakePeer, broker, build_response) -> None:
    """Wait for the broker's request and feed back the response."""
    for _ in range(100):
        if peer.sent:
            break
        await asyncio.sleep(0)
    request = peer.sent[-1]
    broker.on_inbound_message(json.dumps(build_response(request)))


class TestCanvasTools:
    @pytest.mark.asyncio
    async def test_read_canvas_without_session(self, settings):
        sessions, _ = _make_sessions(settings)
        registry = build_registry(settings, sessions)

        result = await registry.invoke("read_canvas", {})
        assert result.is_error is True
        assert "No canvas is open" in result.joined_text

    @pytest.mark.asyncio
    async def test_read_canvas_without_client(self, settings):
        sessions, _ = _make_sessions(settings)
        await sessions.open("algebra")
        registry = build_registry(settings, sessions)

        result = await registry.invoke("read_canvas", {})
        assert result.is_error is True
        assert "No canvas client connected" in result.joined_text

    @pytest.mark.asyncio
    async def test_read_canvas_returns_image(self, settings):
        sessions, _ = _make_sessions(settings)
        await sessions.open("algebra")
        peer = FakePeer()
        sessions.broker.attach_peer(peer)
        registry = build_registry(settings, sessions)

        png = _png_b64()
        call = asyncio.create_task(registry.invoke("read_canvas", {"page": "p2"}))
        await _answer(
            peer,
            sessions.broker,
            lambda req: {"kind": "snapshot-response", "id": req["id"], "page": "p2", "png": png},
        )
        result = await call

        assert result.is_error is False
        assert result.images[0].data == png
        assert result.joined_text == "Snapshot of page: p2"

    @pytest.mark.asyncio
    async def test_tools_follow_session_switch(self, settings):
        sessions, _ = _make_sessions(settings)
        registry = build_registry(settings, sessions)
        await sessions.open("A")
        await sessions.open("B")
        peer = FakePeer()
        sessions.broker.attach_peer(peer)

        call = asyncio.create_task(registry.invoke("read_canvas", {}))
        await _answer(
            peer,
            sessions.broker,
            lambda req: {"kind": "snapshot-response", "id": req["id"], "page": "b1", "png": _png_b64()},
        )
        assert (await call).is_error is False

    @pytest.mark.asyncio
    async def test_export_pdf_writes_file(self, settings, tmp_path):
        sessions, _ = _make_sessions(settings)
        await sessions.open("algebra")
        peer = FakePeer()
        sessions.broker.attach_peer(peer)
        registry = build_registry(settings, sessions)

        call = asyncio.create_task(registry.invoke("export_pdf", {}))
        await _answer(
            peer,
            sessions.broker,
            lambda req: {
                "kind": "export-response",
                "id": req["id"],
                "pages": [{"name": "p1", "png": _png_b64()}, {"name": "p2", "png": _png_b64((20, 40))}],
            },
        )
        result = await call

        assert result.is_error is False
        out = tmp_path / "exports" / "algebra.pdf"
        assert out.exists()
        assert out.read_bytes().startswith(b"%PDF")
        assert "2 page(s)" in result.joined_text

    @pytest.mark.asyncio
    async def test_save_canvas(self, settings):
        sessions, log = _make_sessions(settings)
        registry = build_registry(settings, sessions)

        assert (await registry.invoke("save_canvas", {})).is_error is True
        await sessions.open("algebra")
        result = await registry.invoke("save_canvas", {})
        assert result.is_error is False
        assert log == ["save:algebra"]

    def test_resolve_export_path(self, tmp_path):
        base = str(tmp_path)
        assert resolve_export_path(None, base, "c") == tmp_path / "c.pdf"
        assert resolve_export_path("out/x", base, "c") == tmp_path / "out" / "x.pdf"
        assert resolve_export_path(str(tmp_path / "y.pdf"), "/elsewhere", "c") == tmp_path / "y.pdf"
