"""
Per-session mutual exclusion.

Every event that touches a session (an inbound message or a reply-timer
expiry) runs inside `SessionLocks.hold(session_id)`. Locks are created
on demand and discarded once nobody holds or waits on them, so the
registry does not grow with the number of contacts ever seen.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class SessionLocks:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if self._users[session_id] == 0:
                del self._users[session_id]
                self._locks.pop(session_id, None)

    def is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
