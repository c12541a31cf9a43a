"""Session manager: exactly one open canvas at a time.

States are Idle (no session) and Active(session). Opening another canvas
saves and tears down the current one first, so there is never more than
one broker/transport pair live. Sessions are immutable; switching builds
a new one.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from easel.config import Settings
from easel.errors import NoActiveSession
from easel.workspace.broker import EXPORT_TIMEOUT, PeerBroker
from easel.workspace.schemas import ExportResponse
from easel.workspace.server import list_workspace_files, snapshot_path_for, start_workspace_server

logger = logging.getLogger(__name__)


class Transport(Protocol):
    port: int

    async def save(self) -> None: ...

    async def stop(self) -> None: ...


TransportFactory = Callable[[str, PeerBroker, Path], Awaitable[Transport]]
SaveOperation = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class SessionInfo:
    name: str
    url: str


@dataclass(frozen=True)
class Session:
    name: str
    url: str
    broker: PeerBroker
    transport: Transport

    @property
    def info(self) -> SessionInfo:
        return SessionInfo(self.name, self.url)

    async def save(self) -> None:
        await self.transport.save()


def detect_lan_host() -> str:
    """Best guess at this machine's LAN address, falling back to localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        try:
            # No packet is sent; connect() only selects the outbound interface.
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
        except OSError:
            return "localhost"


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        transport_factory: TransportFactory | None = None,
        host_resolver: Callable[[], str] | None = None,
    ) -> None:
        self._settings = settings
        self._canvas_dir = Path(settings.canvas_dir).expanduser()
        self._factory = transport_factory or self._start_server
        self._host_resolver = host_resolver or detect_lan_host
        self._active: Session | None = None
        self._lock = asyncio.Lock()

    async def _start_server(self, name: str, broker: PeerBroker, snapshot_path: Path) -> Transport:
        return await start_workspace_server(name, broker, snapshot_path, self._settings)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def broker(self) -> PeerBroker | None:
        return self._active.broker if self._active else None

    @property
    def save_operation(self) -> SaveOperation | None:
        return self._active.save if self._active else None

    @property
    def is_connected(self) -> bool:
        return self._active is not None and self._active.broker.is_connected

    @property
    def active_info(self) -> SessionInfo | None:
        return self._active.info if self._active else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def open(self, name: str) -> SessionInfo:
        """Open canvas ``name``; re-opening the active name is a no-op."""
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValueError(f"Invalid canvas name: {name!r}")

        async with self._lock:
            if self._active is not None and self._active.name == name:
                return self._active.info

            await self._close_locked()

            broker = PeerBroker(fail_pending_on_disconnect=self._settings.fail_pending_on_disconnect)
            transport = await self._factory(name, broker, snapshot_path_for(self._canvas_dir, name))
            host = self._settings.public_host or self._host_resolver()
            self._active = Session(name, f"http://{host}:{transport.port}", broker, transport)
            logger.info("Opened canvas %s at %s", name, self._active.url)
            return self._active.info

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        session = self._active
        if session is None:
            return
        try:
            await session.save()
        except Exception as e:
            logger.warning("Saving canvas %s before close failed: %s", session.name, e)
        self._active = None
        await session.transport.stop()
        logger.info("Closed canvas %s", session.name)

    # ------------------------------------------------------------------
    # Session-scoped operations
    # ------------------------------------------------------------------

    async def export_pages(self, timeout: float = EXPORT_TIMEOUT) -> ExportResponse:
        session = self._active
        if session is None:
            raise NoActiveSession()
        return await session.broker.issue_export(timeout)

    async def save(self) -> None:
        session = self._active
        if session is None:
            raise NoActiveSession()
        await session.save()

    async def list(self) -> list[str]:
        return await asyncio.to_thread(list_workspace_files, self._canvas_dir)
