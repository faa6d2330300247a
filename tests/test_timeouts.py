"""Tests for SessionLocks and TimeoutScheduler."""
import asyncio

import pytest

from engine.locks import SessionLocks
from engine.timeouts import TimeoutScheduler


class Recorder:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, session_id: str, token: str) -> None:
        self.calls.append((session_id, token))


@pytest.fixture
def locks() -> SessionLocks:
    return SessionLocks()


@pytest.fixture
def timers(locks, clock) -> TimeoutScheduler:
    return TimeoutScheduler(locks, sleep=clock.sleep)


class TestSessionLocks:
    @pytest.mark.asyncio
    async def test_same_session_is_serialised(self, locks):
        order = []

        async def worker(name):
            async with locks.hold("s1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_sessions_do_not_block(self, locks):
        async with locks.hold("s1"):
            async with locks.hold("s2"):
                assert locks.is_locked("s1")
                assert locks.is_locked("s2")

    @pytest.mark.asyncio
    async def test_idle_locks_are_discarded(self, locks):
        async with locks.hold("s1"):
            assert len(locks) == 1
        assert len(locks) == 0


class TestTimeoutScheduler:
    @pytest.mark.asyncio
    async def test_fires_after_delay(self, timers, clock):
        rec = Recorder()
        token = timers.arm("s1", 30, rec)
        await clock.advance(29)
        assert rec.calls == []
        await clock.advance(1)
        assert rec.calls == [("s1", token)]
        assert not timers.is_armed("s1")

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self, timers, clock):
        rec = Recorder()
        timers.arm("s1", 30, rec)
        assert timers.cancel("s1")
        await clock.advance(60)
        assert rec.calls == []
        assert not timers.cancel("s1")

    @pytest.mark.asyncio
    async def test_rearm_replaces_previous_timer(self, timers, clock):
        rec = Recorder()
        timers.arm("s1", 10, rec)
        second = timers.arm("s1", 20, rec)
        await clock.advance(15)
        assert rec.calls == []
        await clock.advance(5)
        assert rec.calls == [("s1", second)]

    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, timers, clock):
        rec = Recorder()
        token = timers.arm("s1", 30, rec)
        assert timers.claim("s1", token)
        assert not timers.claim("s1", token)
        await clock.advance(30)
        assert rec.calls == []

    @pytest.mark.asyncio
    async def test_callback_runs_under_session_lock(self, timers, locks, clock):
        seen = []

        async def on_expire(session_id, token):
            seen.append(locks.is_locked(session_id))

        timers.arm("s1", 5, on_expire)
        await clock.advance(5)
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_cancel_while_expired_timer_waits_for_lock(self, timers, locks, clock):
        rec = Recorder()
        timers.arm("s1", 10, rec)
        async with locks.hold("s1"):
            # the timer is due and blocked on the lock an inbound turn holds
            await clock.advance(10)
            assert rec.calls == []
            timers.cancel("s1")
        await clock.settle()
        assert rec.calls == []
        assert timers.fired == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cancel_at", [0, 1, 5, 9, 9.5])
    async def test_cancel_before_expiry_never_fires(self, timers, clock, cancel_at):
        rec = Recorder()
        timers.arm("s1", 10, rec)
        await clock.advance(cancel_at)
        timers.cancel("s1")
        for _ in range(5):
            await clock.advance(10)
        assert rec.calls == []

    @pytest.mark.asyncio
    async def test_repeated_expiry_checks_fire_once(self, timers, clock):
        rec = Recorder()
        timers.arm("s1", 10, rec)
        for _ in range(5):
            await clock.advance(10)
        assert len(rec.calls) == 1
        assert timers.fired == 1

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, timers, clock):
        async def boom(session_id, token):
            raise RuntimeError("backend down")

        timers.arm("s1", 1, boom)
        await clock.advance(1)
        assert timers.fired == 1
        assert timers.armed_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, timers, clock):
        rec = Recorder()
        timers.arm("s1", 10, rec)
        timers.arm("s2", 10, rec)
        await clock.settle()
        await timers.shutdown()
        assert timers.armed_count == 0
        await clock.advance(20)
        assert rec.calls == []
