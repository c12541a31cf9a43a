"""Tests for the per-canvas workspace server: persistence helpers, sync room, routes."""

import asyncio
import json
import time

import httpx
import pytest
from starlette.testclient import TestClient

from easel.workspace.broker import PeerBroker
from easel.workspace.server import (
    SNAPSHOT_SUFFIX,
    SyncRoom,
    create_workspace_app,
    list_workspace_files,
    load_snapshot,
    start_workspace_server,
    write_snapshot,
)

from tests.conftest import FakePeer

DOC = {"store": {"page:1": {"id": "page:1", "name": "Page 1"}}, "schema": {"v": 1}}


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_write_then_load(self, tmp_path):
        path = tmp_path / "deep" / "dir" / f"a{SNAPSHOT_SUFFIX}"
        write_snapshot(DOC, path)
        assert load_snapshot(path) == DOC

    def test_missing_file_loads_none(self, tmp_path):
        assert load_snapshot(tmp_path / "nope.json") is None

    def test_corrupt_file_loads_none(self, tmp_path):
        path = tmp_path / f"bad{SNAPSHOT_SUFFIX}"
        path.write_text("{not json")
        assert load_snapshot(path) is None

    def test_non_object_loads_none(self, tmp_path):
        path = tmp_path / f"list{SNAPSHOT_SUFFIX}"
        path.write_text("[1, 2]")
        assert load_snapshot(path) is None

    def test_list_workspace_files(self, tmp_path):
        (tmp_path / f"b{SNAPSHOT_SUFFIX}").write_text("{}")
        (tmp_path / f"a{SNAPSHOT_SUFFIX}").write_text("{}")
        (tmp_path / "readme.md").write_text("x")
        assert list_workspace_files(tmp_path) == ["a", "b"]
        assert list_workspace_files(tmp_path / "missing") == []


# ---------------------------------------------------------------------------
# Sync room
# ---------------------------------------------------------------------------


class TestSyncRoom:
    @pytest.mark.asyncio
    async def test_relays_to_other_clients_only(self, tmp_path):
        room = SyncRoom(tmp_path / "c.json")
        a, b = FakePeer(), FakePeer()
        await room.connect(a)
        await room.connect(b)

        await room.handle_message(json.dumps({"type": "update", "n": 1}), sender=a)

        assert a.sent == []
        assert b.sent == [{"type": "update", "n": 1}]

    @pytest.mark.asyncio
    async def test_new_client_receives_current_document(self, tmp_path):
        room = SyncRoom(tmp_path / "c.json", document=DOC)
        client = FakePeer()
        await room.connect(client)
        assert client.sent == [{"type": "snapshot", "snapshot": DOC}]

    @pytest.mark.asyncio
    async def test_snapshot_message_autosaves(self, tmp_path):
        path = tmp_path / "c.json"
        room = SyncRoom(path, autosave_delay=0.01)

        await room.handle_message(json.dumps({"type": "snapshot", "snapshot": DOC}))
        assert room.document == DOC
        await asyncio.sleep(0.1)

        assert load_snapshot(path) == DOC
        await room.close()

    @pytest.mark.asyncio
    async def test_autosave_is_debounced(self, tmp_path):
        path = tmp_path / "c.json"
        room = SyncRoom(path, autosave_delay=0.05)

        await room.handle_message(json.dumps({"type": "snapshot", "snapshot": {"v": 1}}))
        await asyncio.sleep(0.01)
        await room.handle_message(json.dumps({"type": "snapshot", "snapshot": {"v": 2}}))
        await asyncio.sleep(0.02)
        assert not path.exists()

        await asyncio.sleep(0.1)
        assert load_snapshot(path) == {"v": 2}

    @pytest.mark.asyncio
    async def test_save_writes_immediately(self, tmp_path):
        path = tmp_path / "c.json"
        room = SyncRoom(path, document=DOC, autosave_delay=10)
        await room.save()
        assert load_snapshot(path) == DOC

    @pytest.mark.asyncio
    async def test_save_without_document_writes_nothing(self, tmp_path):
        path = tmp_path / "c.json"
        await SyncRoom(path).save()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_failed_client_is_dropped(self, tmp_path):
        room = SyncRoom(tmp_path / "c.json")
        await room.connect(FakePeer(fail=True))
        await room.handle_message("{}")
        assert room.client_count == 0


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _make_app(tmp_path):
    broker = PeerBroker()
    room = SyncRoom(tmp_path / "c.json", autosave_delay=0.01)
    return create_workspace_app("algebra", broker, room), broker, room


class TestRoutes:
    def test_status(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        with TestClient(app) as client:
            response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"canvas": "algebra", "connected": False, "sync_clients": 0}

    def test_peer_channel_attaches_and_detaches(self, tmp_path):
        app, broker, _ = _make_app(tmp_path)
        with TestClient(app) as client:
            with client.websocket_connect("/ws"):
                assert client.get("/").json()["connected"] is True
            assert _wait_for(lambda: not broker.is_connected)

    def test_unhandled_peer_traffic_reaches_sync_clients(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        with TestClient(app) as client:
            with client.websocket_connect("/sync") as sync, client.websocket_connect("/ws") as peer:
                peer.send_text(json.dumps({"type": "presence", "user": "pen"}))
                assert sync.receive_json() == {"type": "presence", "user": "pen"}

    def test_sync_clients_share_document(self, tmp_path):
        app, _, room = _make_app(tmp_path)
        with TestClient(app) as client:
            with client.websocket_connect("/sync") as first, client.websocket_connect("/sync") as second:
                first.send_text(json.dumps({"type": "snapshot", "snapshot": DOC}))
                assert second.receive_json() == {"type": "snapshot", "snapshot": DOC}

            with client.websocket_connect("/sync") as late:
                assert late.receive_json() == {"type": "snapshot", "snapshot": DOC}

            assert _wait_for(room.snapshot_path.exists)
        assert load_snapshot(room.snapshot_path) == DOC

    def test_snapshot_request_over_websocket(self, tmp_path):
        app, broker, _ = _make_app(tmp_path)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as peer:
                future = client.portal.start_task_soon(broker.issue_snapshot, "p1", 5)
                request = peer.receive_json()
                assert request["kind"] == "snapshot-request"
                assert request["page"] == "p1"

                peer.send_text(
                    json.dumps({"kind": "snapshot-response", "id": request["id"], "page": "p1", "png": "AAAA"})
                )
                response = future.result(timeout=5)
        assert response.png == "AAAA"


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


class TestWorkspaceServer:
    @pytest.mark.asyncio
    async def test_start_serve_stop(self, settings, tmp_path):
        settings.workspace_bind_host = "127.0.0.1"
        path = tmp_path / "canvases" / f"algebra{SNAPSHOT_SUFFIX}"
        write_snapshot(DOC, path)

        server = await start_workspace_server("algebra", PeerBroker(), path, settings)
        try:
            assert server.port > 0
            assert server.room.document == DOC
            async with httpx.AsyncClient() as client:
                response = await client.get(f"http://127.0.0.1:{server.port}/")
            assert response.json()["canvas"] == "algebra"
            await server.save()
        finally:
            await server.stop()

        assert load_snapshot(path) == DOC

    @pytest.mark.asyncio
    async def test_port_in_use_raises(self, settings, tmp_path):
        settings.workspace_bind_host = "127.0.0.1"
        first = await start_workspace_server("a", PeerBroker(), tmp_path / "a.json", settings)
        try:
            settings.workspace_port = first.port
            with pytest.raises(OSError):
                await start_workspace_server("b", PeerBroker(), tmp_path / "b.json", settings)
        finally:
            await first.stop()
