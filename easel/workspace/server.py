"""Per-canvas workspace server.

One Starlette app per open canvas, served by uvicorn in a background task:

  GET /    status of the canvas (name, peer connected, sync clients)
  WS /ws   broker channel: correlation envelopes; anything else is
           handed to the sync room
  WS /sync sync channel for the canvas document

The sync room is an opaque relay. It keeps the latest full document the
clients publish (``{"type": "snapshot", "snapshot": {...}}``), relays every
message to the other sync clients and persists the document with a
debounced autosave.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from easel.config import Settings
from easel.workspace.broker import PeerBroker

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".canvas.json"


# ------------------------------------------------------------------
# Persistence helpers
# ------------------------------------------------------------------


def snapshot_path_for(canvas_dir: str | Path, name: str) -> Path:
    return Path(canvas_dir).expanduser() / f"{name}{SNAPSHOT_SUFFIX}"


def load_snapshot(path: str | Path) -> dict[str, Any] | None:
    """Load a saved document, or None when missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable canvas snapshot %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring canvas snapshot %s: not a JSON object", path)
        return None
    return data


def write_snapshot(document: dict[str, Any], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document), encoding="utf-8")


def list_workspace_files(directory: str | Path) -> list[str]:
    """Names of saved canvases in ``directory``, sorted. Missing dir -> []."""
    directory = Path(directory).expanduser()
    if not directory.is_dir():
        return []
    return sorted(
        p.name[: -len(SNAPSHOT_SUFFIX)]
        for p in directory.iterdir()
        if p.is_file() and p.name.endswith(SNAPSHOT_SUFFIX)
    )


# ------------------------------------------------------------------
# Sync room
# ------------------------------------------------------------------


class SyncRoom:
    def __init__(
        self,
        snapshot_path: str | Path,
        document: dict[str, Any] | None = None,
        autosave_delay: float = 2.0,
    ) -> None:
        self.snapshot_path = Path(snapshot_path)
        self._document = document
        self._autosave_delay = autosave_delay
        self._clients: list[WebSocket] = []
        self._autosave_task: asyncio.Task | None = None

    @property
    def document(self) -> dict[str, Any] | None:
        return self._document

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        self._clients.append(ws)
        if self._document is not None:
            await ws.send_text(json.dumps({"type": "snapshot", "snapshot": self._document}))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._clients:
            self._clients.remove(ws)

    async def handle_message(self, raw: str, sender: WebSocket | None = None) -> None:
        """Record ``raw`` if it is a full document, then relay it."""
        try:
            message = json.loads(raw)
        except ValueError:
            message = None
        if isinstance(message, dict) and message.get("type") == "snapshot":
            snapshot = message.get("snapshot")
            if isinstance(snapshot, dict):
                self._document = snapshot
                self._schedule_autosave()

        for client in list(self._clients):
            if client is sender:
                continue
            try:
                await client.send_text(raw)
            except Exception as e:
                logger.debug("Dropping sync client after failed send: %s", e)
                self.disconnect(client)

    def _schedule_autosave(self) -> None:
        if self._autosave_task and not self._autosave_task.done():
            self._autosave_task.cancel()
        self._autosave_task = asyncio.create_task(self._autosave())

    async def _autosave(self) -> None:
        await asyncio.sleep(self._autosave_delay)
        try:
            await asyncio.to_thread(write_snapshot, self._document, self.snapshot_path)
            logger.debug("Autosaved %s", self.snapshot_path)
        except OSError as e:
            logger.warning("Autosave of %s failed: %s", self.snapshot_path, e)

    async def save(self) -> None:
        """Write the current document now, superseding any pending autosave."""
        await self._cancel_autosave()
        if self._document is None:
            logger.debug("Nothing to save for %s", self.snapshot_path)
            return
        await asyncio.to_thread(write_snapshot, self._document, self.snapshot_path)
        logger.info("Saved canvas to %s", self.snapshot_path)

    async def close(self) -> None:
        await self._cancel_autosave()
        self._clients.clear()

    async def _cancel_autosave(self) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


# ------------------------------------------------------------------
# App
# ------------------------------------------------------------------


async def _receive_text(ws: WebSocket) -> str | None:
    """Next text frame (bytes decoded as UTF-8), or None on disconnect."""
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        return None
    text = message.get("text")
    if text is None:
        text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
    return text


def create_workspace_app(name: str, broker: PeerBroker, room: SyncRoom) -> Starlette:
    """Create the Starlette app serving one canvas."""

    async def status(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "canvas": name,
                "connected": broker.is_connected,
                "sync_clients": room.client_count,
            }
        )

    async def peer_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        broker.attach_peer(websocket)
        try:
            while (raw := await _receive_text(websocket)) is not None:
                if not broker.on_inbound_message(raw):
                    await room.handle_message(raw)
        finally:
            if broker.peer is websocket:
                broker.attach_peer(None)

    async def sync_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        await room.connect(websocket)
        try:
            while (raw := await _receive_text(websocket)) is not None:
                await room.handle_message(raw, sender=websocket)
        finally:
            room.disconnect(websocket)

    return Starlette(
        routes=[
            Route("/", status),
            WebSocketRoute("/ws", peer_channel),
            WebSocketRoute("/sync", sync_channel),
        ]
    )


# ------------------------------------------------------------------
# Server
# ------------------------------------------------------------------


class _BackgroundServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class WorkspaceServer:
    """Handle on a running workspace server: ``port``, ``save()``, ``stop()``."""

    def __init__(
        self,
        name: str,
        room: SyncRoom,
        server: uvicorn.Server,
        task: asyncio.Task,
        sock: socket.socket,
    ) -> None:
        self.name = name
        self.room = room
        self._server = server
        self._task = task
        self._sock = sock
        self.port: int = sock.getsockname()[1]

    async def save(self) -> None:
        await self.room.save()

    async def stop(self) -> None:
        self._server.should_exit = True
        try:
            await self._task
        finally:
            await self.room.close()
            self._sock.close()
        logger.info("Workspace server for %s stopped", self.name)


def _bind(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.listen(128)
    sock.setblocking(False)
    return sock


async def start_workspace_server(
    name: str,
    broker: PeerBroker,
    snapshot_path: str | Path,
    settings: Settings,
) -> WorkspaceServer:
    """Serve canvas ``name`` and return once the server is accepting.

    Raises OSError if the port cannot be bound.
    """
    document = await asyncio.to_thread(load_snapshot, snapshot_path)
    room = SyncRoom(snapshot_path, document, settings.autosave_delay)
    app = create_workspace_app(name, broker, room)

    sock = _bind(settings.workspace_bind_host, settings.workspace_port)
    config = uvicorn.Config(app, log_level="warning", lifespan="off")
    server = _BackgroundServer(config)
    task = asyncio.create_task(server.serve(sockets=[sock]), name=f"workspace-{name}")

    while not server.started:
        if task.done():
            sock.close()
            task.result()
            raise RuntimeError(f"Workspace server for {name} exited during startup")
        await asyncio.sleep(0.01)

    handle = WorkspaceServer(name, room, server, task, sock)
    logger.info("Workspace server for %s listening on port %d", name, handle.port)
    return handle
