"""Peer broker: correlated snapshot/export requests over one peer connection.

The broker owns at most one peer connection (anything with an async
``send_text``, e.g. a Starlette WebSocket) and the pending-request table
for it. Inbound traffic it does not recognise is left to the caller, which
forwards it to the sync room sharing the connection.
"""

from __future__ import annotations

import itertools
import logging
from typing import Protocol

from pydantic import BaseModel

from easel.errors import NotConnected, PeerProtocolError
from easel.workspace.pending import PendingTable
from easel.workspace.schemas import (
    ExportRequest,
    ExportResponse,
    SnapshotRequest,
    SnapshotResponse,
    parse_response,
    peek_response_id,
)

logger = logging.getLogger(__name__)

SNAPSHOT_TIMEOUT = 15.0
EXPORT_TIMEOUT = 30.0


class PeerConnection(Protocol):
    async def send_text(self, data: str) -> None: ...


class PeerBroker:
    def __init__(self, fail_pending_on_disconnect: bool = False) -> None:
        self._peer: PeerConnection | None = None
        self._pending = PendingTable()
        self._counter = itertools.count(1)
        self._fail_pending_on_disconnect = fail_pending_on_disconnect

    @property
    def is_connected(self) -> bool:
        return self._peer is not None

    @property
    def peer(self) -> PeerConnection | None:
        return self._peer

    @property
    def pending(self) -> PendingTable:
        return self._pending

    def attach_peer(self, connection: PeerConnection | None) -> None:
        """Replace the registered connection. ``None`` means the peer left.

        In-flight requests are left to their timeouts unless the broker was
        built with ``fail_pending_on_disconnect``.
        """
        previous = self._peer
        self._peer = connection
        if connection is None:
            if previous is not None:
                logger.info("Canvas peer disconnected (%d pending)", len(self._pending))
            if self._fail_pending_on_disconnect and len(self._pending):
                failed = self._pending.fail_all(NotConnected("Canvas client disconnected"))
                logger.warning("Failed %d pending peer requests on disconnect", failed)
        else:
            logger.info("Canvas peer %s", "replaced" if previous is not None else "connected")

    async def issue_snapshot(
        self, page: str | None = None, timeout: float = SNAPSHOT_TIMEOUT
    ) -> SnapshotResponse:
        """Ask the peer for a PNG of ``page`` (the current page when None)."""
        request_id = f"snap-{next(self._counter)}"
        return await self._request(SnapshotRequest(id=request_id, page=page), timeout)

    async def issue_export(self, timeout: float = EXPORT_TIMEOUT) -> ExportResponse:
        """Ask the peer for a PNG of every page."""
        request_id = f"export-{next(self._counter)}"
        return await self._request(ExportRequest(id=request_id), timeout)

    async def _request(self, envelope: BaseModel, timeout: float):
        peer = self._peer
        if peer is None:
            raise NotConnected()

        request_id = envelope.id  # type: ignore[attr-defined]
        future = self._pending.register(request_id, timeout)
        try:
            await peer.send_text(envelope.model_dump_json())
        except Exception as e:
            future.cancel()
            logger.warning("Sending %s failed: %s", request_id, e)
            raise NotConnected(f"Send to canvas client failed: {e}") from e

        logger.debug("Sent %s (timeout %gs)", request_id, timeout)
        return await future

    def on_inbound_message(self, raw: str | bytes) -> bool:
        """Resolve the pending request ``raw`` answers.

        Returns False when ``raw`` is not a response envelope or its id is
        not pending (late, duplicate or unknown), so the caller can pass it
        on to the sync transport. A malformed response to a pending id fails
        that request with PeerProtocolError.
        """
        response = parse_response(raw)
        if response is None:
            request_id = peek_response_id(raw)
            if request_id is None or request_id not in self._pending:
                return False
            logger.warning("Malformed response envelope for %s", request_id)
            self._pending.fail(request_id, PeerProtocolError(f"Malformed response to {request_id}"))
            return True
        if not self._pending.resolve(response.id, response):
            logger.debug("No pending request for %s %s", response.kind, response.id)
            return False
        return True
