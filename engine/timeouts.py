"""
Timeout Scheduler — one reply timer per session.

    token = scheduler.arm(session_id, 30, on_expire)
    scheduler.cancel(session_id)

A timer is an asyncio task that sleeps, then takes the session lock and
tries to *claim* its token. The claim succeeds only if that exact token
is still the one armed for the session, and it removes the token, so:

  - `cancel` (or re-arming) drops the token synchronously; any later
    claim fails, and the callback never runs once `cancel` has returned.
  - A token can be claimed once, so a timer fires at most once even if
    expiry is checked repeatedly.
  - The callback runs under the same per-session lock as inbound
    messages: a message and an expiry arriving together are processed
    one after the other, never interleaved.

The callback is invoked while the lock is held and must not take it again.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from engine.locks import SessionLocks

logger = structlog.get_logger()

ExpiryCallback = Callable[[str, str], Awaitable[None]]     # (session_id, token)
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class _Timer:
    token: str
    seconds: float
    task: Optional[asyncio.Task] = None


class TimeoutScheduler:

    def __init__(self, locks: SessionLocks, sleep: Sleeper = asyncio.sleep):
        self._locks = locks
        self._sleep = sleep
        self._timers: dict[str, _Timer] = {}
        self.fired = 0

    # ── Public API ────────────────────────────────────────

    def arm(self, session_id: str, seconds: float, on_expire: ExpiryCallback) -> str:
        """Arm (or replace) the session's timer. Returns the new token."""
        self.cancel(session_id)
        timer = _Timer(token=uuid.uuid4().hex, seconds=seconds)
        self._timers[session_id] = timer
        timer.task = asyncio.create_task(self._run(session_id, timer, on_expire))
        logger.debug("timeout_armed", session_id=session_id, seconds=seconds, token=timer.token)
        return timer.token

    def cancel(self, session_id: str) -> bool:
        """Disarm the session's timer. Returns True if one was armed."""
        timer = self._timers.pop(session_id, None)
        if timer is None:
            return False
        if timer.task is not None and timer.task is not asyncio.current_task():
            timer.task.cancel()
        logger.debug("timeout_cancelled", session_id=session_id, token=timer.token)
        return True

    def is_armed(self, session_id: str, token: str = "") -> bool:
        timer = self._timers.get(session_id)
        return timer is not None and (not token or timer.token == token)

    def claim(self, session_id: str, token: str) -> bool:
        """Consume `token` if it is still the armed one. Caller must hold the session lock."""
        timer = self._timers.get(session_id)
        if timer is None or timer.token != token:
            return False
        del self._timers[session_id]
        return True

    @property
    def locks(self) -> SessionLocks:
        return self._locks

    @property
    def armed_count(self) -> int:
        return len(self._timers)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            if timer.task:
                timer.task.cancel()
        for timer in timers:
            if timer.task:
                try:
                    await timer.task
                except asyncio.CancelledError:
                    pass
        logger.info("timeout_scheduler_stopped", cancelled=len(timers))

    # ── Timer task ────────────────────────────────────────

    async def _run(self, session_id: str, timer: _Timer, on_expire: ExpiryCallback) -> None:
        await self._sleep(timer.seconds)
        async with self._locks.hold(session_id):
            if not self.claim(session_id, timer.token):
                logger.debug("timeout_stale", session_id=session_id, token=timer.token)
                return
            self.fired += 1
            logger.info("timeout_fired", session_id=session_id, seconds=timer.seconds)
            try:
                await on_expire(session_id, timer.token)
            except Exception as e:
                logger.error("timeout_callback_failed", session_id=session_id, error=str(e))
