"""Pending-request table: correlation id -> awaiting future plus a timeout.

Each id has at most one live entry. The first of resolve, fail, timeout
or cancellation removes the entry, so anything arriving later for the
same id is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from easel.errors import RequestTimeout

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    id: str
    created_at: float
    future: asyncio.Future
    timer: asyncio.TimerHandle


class PendingTable:
    """Map from request id to the future waiting on it."""

    def __init__(self) -> None:
        self._entries: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def pending_ids(self) -> list[str]:
        return list(self._entries)

    def register(self, request_id: str, timeout: float) -> asyncio.Future:
        """Create an entry for ``request_id`` that fails after ``timeout`` seconds.

        Must be called from a running event loop. Raises ValueError if the id
        is already live.
        """
        if request_id in self._entries:
            raise ValueError(f"Request id {request_id!r} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        entry = PendingRequest(request_id, time.monotonic(), future, timer)
        self._entries[request_id] = entry
        future.add_done_callback(lambda _f: self._discard(entry))
        return future

    def resolve(self, request_id: str, value: Any) -> bool:
        """Complete ``request_id`` with ``value``. True iff an entry existed."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def fail(self, request_id: str, error: BaseException) -> bool:
        """Complete ``request_id`` with ``error``. True iff an entry existed."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def fail_all(self, error: BaseException) -> int:
        """Fail every live entry with ``error``; returns how many were failed."""
        count = 0
        for request_id in list(self._entries):
            if self.fail(request_id, error):
                count += 1
        return count

    def _expire(self, request_id: str, timeout: float) -> None:
        if self.fail(request_id, RequestTimeout(request_id, timeout)):
            logger.warning("Peer request %s timed out after %gs", request_id, timeout)

    def _pop(self, request_id: str) -> PendingRequest | None:
        entry = self._entries.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
        return entry

    def _discard(self, entry: PendingRequest) -> None:
        # Cancelled by the awaiting side: drop the entry if it is still ours.
        if self._entries.get(entry.id) is entry:
            self._pop(entry.id)
