"""Remote canvas workspace: peer broker, per-canvas server, session lifecycle."""

from easel.workspace.broker import PeerBroker
from easel.workspace.pending import PendingTable
from easel.workspace.schemas import (
    ExportPage,
    ExportRequest,
    ExportResponse,
    SnapshotRequest,
    SnapshotResponse,
)
from easel.workspace.session import Session, SessionInfo, SessionManager

__all__ = [
    "ExportPage",
    "ExportRequest",
    "ExportResponse",
    "PeerBroker",
    "PendingTable",
    "Session",
    "SessionInfo",
    "SessionManager",
    "SnapshotRequest",
    "SnapshotResponse",
]
