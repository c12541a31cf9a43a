"""MCP interface: the built-in tool catalog for other agents.

Exposes every registry tool (file tools and canvas tools) through the mcp
library's Server + Streamable HTTP transport, mounted at /mcp. With
EASEL_MCP_CANVAS set, that canvas is opened at startup so the canvas
tools have a peer to talk to.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from mcp.server import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.types import ImageContent, TextContent, Tool
from starlette.applications import Starlette
from starlette.routing import Mount

from easel import __version__
from easel.config import Settings
from easel.errors import ToolExecutionError
from easel.llm.types import ImagePart
from easel.tools import ToolRegistry, ToolResult, build_registry
from easel.workspace import SessionManager

logger = logging.getLogger(__name__)

McpContent = TextContent | ImageContent


def to_mcp_content(result: ToolResult) -> list[McpContent]:
    content: list[McpContent] = []
    for part in result.content:
        if isinstance(part, ImagePart):
            content.append(ImageContent(type="image", data=part.data, mimeType=part.media_type))
        else:
            content.append(TextContent(type="text", text=part.text))
    return content


async def call_registry_tool(
    registry: ToolRegistry, name: str, arguments: dict[str, Any] | None
) -> list[McpContent]:
    """Invoke ``name`` and map the result to MCP content.

    Raises ToolExecutionError for error results so the MCP server reports
    them with ``isError`` set.
    """
    result = await registry.invoke(name, arguments or {})
    if result.is_error:
        raise ToolExecutionError(result.joined_text or f"{name} failed")
    return to_mcp_content(result)


def list_registry_tools(registry: ToolRegistry) -> list[Tool]:
    return [
        Tool(name=tool.name, description=tool.description, inputSchema=tool.input_schema)
        for tool in registry.definitions()
    ]


def create_mcp_server(registry: ToolRegistry) -> StreamableHTTPSessionManager:
    """Create MCP server over ``registry``.

    Returns StreamableHTTPSessionManager to be mounted on Starlette.
    """
    server = Server("easel", version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return list_registry_tools(registry)

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[McpContent]:
        """Route tool calls to the registry."""
        logger.info("MCP tool call: %s", name)
        return await call_registry_tool(registry, name, arguments)

    return StreamableHTTPSessionManager(server)


def build_app(settings: Settings) -> Starlette:
    """Starlette app serving the tool catalog at /mcp.

    The lifespan owns the session manager: it opens EASEL_MCP_CANVAS (if
    set) on startup and closes the canvas, saving it, on shutdown.
    """
    sessions = SessionManager(settings)
    registry = build_registry(settings, sessions)
    mcp_manager = create_mcp_server(registry)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if settings.mcp_canvas:
            info = await sessions.open(settings.mcp_canvas)
            logger.info("Canvas %s open at %s", info.name, info.url)
        try:
            async with mcp_manager.run():
                yield
        finally:
            await sessions.close()

    async def mcp_asgi(scope, receive, send):
        await mcp_manager.handle_request(scope, receive, send)

    app = Starlette(routes=[Mount("/mcp", app=mcp_asgi)], lifespan=lifespan)
    app.state.sessions = sessions
    app.state.registry = registry
    return app


def main() -> None:
    """Entry point: serve the tool catalog over MCP."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("MCP server on %s:%d/mcp", settings.mcp_host, settings.mcp_port)

    uvicorn.run(
        build_app(settings),
        host=settings.mcp_host,
        port=settings.mcp_port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
