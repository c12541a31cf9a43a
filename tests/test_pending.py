"""Tests for the pending-request table: one resolution per id, timeouts free their slot."""

import asyncio

import pytest

from easel.errors import RequestTimeout
from easel.workspace.pending import PendingTable


class TestRegisterResolve:
    @pytest.mark.asyncio
    async def test_resolve_delivers_value_and_removes_entry(self):
        table = PendingTable()
        future = table.register("snap-1", timeout=5)

        assert "snap-1" in table
        assert table.resolve("snap-1", "png-data") is True
        assert await future == "png-data"
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_resolve_unknown_id_returns_false(self):
        table = PendingTable()
        assert table.resolve("nope", 1) is False
        assert table.fail("nope", RuntimeError("x")) is False

    @pytest.mark.asyncio
    async def test_duplicate_live_id_rejected(self):
        table = PendingTable()
        table.register("snap-1", timeout=5)
        with pytest.raises(ValueError):
            table.register("snap-1", timeout=5)
        table.resolve("snap-1", None)

    @pytest.mark.asyncio
    async def test_id_can_be_reused_after_resolution(self):
        table = PendingTable()
        table.register("snap-1", timeout=5)
        table.resolve("snap-1", 1)
        second = table.register("snap-1", timeout=5)
        table.resolve("snap-1", 2)
        assert await second == 2


class TestFirstResolutionWins:
    @pytest.mark.asyncio
    async def test_second_resolve_is_noop(self):
        table = PendingTable()
        future = table.register("a", timeout=5)
        assert table.resolve("a", "first") is True
        assert table.resolve("a", "second") is False
        assert table.fail("a", RuntimeError("late")) is False
        assert await future == "first"

    @pytest.mark.asyncio
    async def test_fail_then_resolve_is_noop(self):
        table = PendingTable()
        future = table.register("a", timeout=5)
        assert table.fail("a", RuntimeError("boom")) is True
        assert table.resolve("a", "late") is False
        with pytest.raises(RuntimeError, match="boom"):
            await future

    @pytest.mark.asyncio
    async def test_mixed_sequences_resolve_each_id_once(self):
        table = PendingTable()
        futures = {f"id-{i}": table.register(f"id-{i}", timeout=5) for i in range(6)}
        outcomes = []
        for i, request_id in enumerate(futures):
            if i % 2:
                outcomes.append(table.resolve(request_id, i))
            else:
                outcomes.append(table.fail(request_id, KeyError(i)))
            outcomes.append(table.resolve(request_id, -1))
            outcomes.append(table.fail(request_id, KeyError(-1)))

        assert outcomes == [True, False, False] * 6
        assert len(table) == 0
        for i, future in enumerate(futures.values()):
            if i % 2:
                assert future.result() == i
            else:
                assert isinstance(future.exception(), KeyError)


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_fails_with_request_timeout(self):
        table = PendingTable()
        future = table.register("snap-9", timeout=0.01)

        with pytest.raises(RequestTimeout) as exc_info:
            await future

        assert exc_info.value.request_id == "snap-9"
        assert len(table) == 0
        assert table.pending_ids() == []

    @pytest.mark.asyncio
    async def test_resolve_after_timeout_is_noop(self):
        table = PendingTable()
        future = table.register("snap-1", timeout=0.01)
        with pytest.raises(RequestTimeout):
            await future
        assert table.resolve("snap-1", "too late") is False
        assert table.fail("snap-1", RuntimeError("too late")) is False

    @pytest.mark.asyncio
    async def test_resolution_cancels_timer(self):
        table = PendingTable()
        future = table.register("snap-1", timeout=0.02)
        table.resolve("snap-1", "ok")
        await asyncio.sleep(0.05)
        assert future.result() == "ok"


class TestCancellationAndFailAll:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_removes_entry(self):
        table = PendingTable()
        future = table.register("export-1", timeout=5)
        future.cancel()
        await asyncio.sleep(0)
        assert "export-1" not in table
        assert table.resolve("export-1", "late") is False

    @pytest.mark.asyncio
    async def test_wait_for_timeout_cancels_and_cleans_up(self):
        table = PendingTable()
        future = table.register("export-1", timeout=5)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(future, 0.01)
        await asyncio.sleep(0)
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_fail_all(self):
        table = PendingTable()
        futures = [table.register(f"r{i}", timeout=5) for i in range(3)]
        assert table.fail_all(ConnectionError("gone")) == 3
        assert len(table) == 0
        for future in futures:
            assert isinstance(future.exception(), ConnectionError)
