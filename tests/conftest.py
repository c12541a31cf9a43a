"""Shared fixtures: isolated settings and in-memory stand-ins for the peer and transport."""

from __future__ import annotations

import json

import pytest

from easel.config import Settings


class FakePeer:
    """Peer connection that records every envelope the broker sends."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(data))


class FakeTransport:
    """Transport handle recording save/stop calls into a shared event log."""

    def __init__(self, name: str, log: list[str], port: int = 4100, save_error: Exception | None = None):
        self.name = name
        self.port = port
        self._log = log
        self._save_error = save_error

    async def save(self) -> None:
        self._log.append(f"save:{self.name}")
        if self._save_error is not None:
            raise self._save_error

    async def stop(self) -> None:
        self._log.append(f"stop:{self.name}")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every directory under tmp_path and no .env leakage."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="test-key",
        OPENAI_API_KEY="test-key",
        backend="mock",
        canvas_dir=str(tmp_path / "canvases"),
        export_dir=str(tmp_path / "exports"),
        notes_dir=str(tmp_path / "notes"),
        public_host="127.0.0.1",
        workspace_port=0,
        autosave_delay=0.05,
    )


@pytest.fixture
def notes_dir(tmp_path):
    path = tmp_path / "notes"
    path.mkdir()
    return path
