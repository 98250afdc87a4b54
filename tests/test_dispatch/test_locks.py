"""
Tests for the concurrency guard.

These tests verify mutual exclusion per lock name for both strategies and
the bounded retry of the emulated strategy.
"""

import asyncio

import pytest

from dispatch.locks import (
    ConcurrencyGuard,
    EmulatedLockStrategy,
    NativeLockStrategy,
    build_guard,
)
from shared.errors import LockTimeoutError


def guards():
    return [
        ConcurrencyGuard(NativeLockStrategy()),
        ConcurrencyGuard(EmulatedLockStrategy(max_retries=50, base_delay=0.001, max_delay=0.005)),
    ]


class TestMutualExclusion:
    """Tests shared by both lock strategies."""

    @pytest.mark.parametrize("guard", guards(), ids=["native", "emulated"])
    async def test_sections_do_not_overlap(self, guard: ConcurrencyGuard):
        """Test that two critical sections with the same name never interleave."""
        trace = []

        async def section(label):
            trace.append(f"{label}-start")
            await asyncio.sleep(0.01)
            trace.append(f"{label}-end")

        await asyncio.gather(
            guard.with_lock("reservation-alert:r1", lambda: section("a")),
            guard.with_lock("reservation-alert:r1", lambda: section("b")),
        )

        assert trace in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.parametrize("guard", guards(), ids=["native", "emulated"])
    async def test_second_caller_sees_first_callers_effects(self, guard: ConcurrencyGuard):
        """Test check-then-act under the lock: only one caller acts."""
        state = {"alert_sent": False, "sends": 0}

        async def check_and_send():
            if state["alert_sent"]:
                return False
            await asyncio.sleep(0.01)
            state["sends"] += 1
            state["alert_sent"] = True
            return True

        results = await asyncio.gather(
            *(guard.with_lock("reservation-alert:r1", check_and_send) for _ in range(4))
        )

        assert state["sends"] == 1
        assert results.count(True) == 1

    @pytest.mark.parametrize("guard", guards(), ids=["native", "emulated"])
    async def test_different_names_run_concurrently(self, guard: ConcurrencyGuard):
        inside = []
        both_inside = asyncio.Event()

        async def section(label):
            inside.append(label)
            if len(inside) == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), 1)

        await asyncio.gather(
            guard.with_lock("a", lambda: section("a")),
            guard.with_lock("b", lambda: section("b")),
        )

        assert sorted(inside) == ["a", "b"]

    @pytest.mark.parametrize("guard", guards(), ids=["native", "emulated"])
    async def test_lock_released_on_error(self, guard: ConcurrencyGuard):
        async def boom():
            raise RuntimeError("failed inside")

        with pytest.raises(RuntimeError):
            await guard.with_lock("x", boom)

        async def ok():
            return "ok"

        assert await guard.with_lock("x", ok) == "ok"
        assert guard.active_tickets() == []


class TestTickets:
    """Tests for held-lock bookkeeping."""

    async def test_ticket_held_only_inside_section(self, guard: ConcurrencyGuard):
        seen = {}

        async def section():
            seen["held"] = guard.is_held("history-cleanup")
            seen["tickets"] = [t.name for t in guard.active_tickets()]

        await guard.with_lock("history-cleanup", section)

        assert seen == {"held": True, "tickets": ["history-cleanup"]}
        assert guard.is_held("history-cleanup") is False

    async def test_native_drops_idle_locks(self):
        strategy = NativeLockStrategy()
        guard = ConcurrencyGuard(strategy)

        async def section():
            await asyncio.sleep(0)

        await asyncio.gather(*(guard.with_lock("k", section) for _ in range(3)))

        assert strategy._locks == {}


class TestEmulatedStrategy:
    """Tests for retry-with-backoff."""

    def test_backoff_is_bounded(self):
        strategy = EmulatedLockStrategy(base_delay=0.05, max_delay=1.0)

        assert strategy.backoff(0) == 0.05
        assert strategy.backoff(2) == 0.2
        assert strategy.backoff(10) == 1.0

    async def test_gives_up_after_retry_budget(self):
        """Test that a busy lock raises instead of running unlocked."""
        guard = ConcurrencyGuard(EmulatedLockStrategy(max_retries=2, base_delay=0.001, max_delay=0.001))
        release = asyncio.Event()
        ran = []

        async def holder():
            await release.wait()

        async def contender():
            ran.append(1)

        holding = asyncio.create_task(guard.with_lock("k", holder))
        await asyncio.sleep(0)

        with pytest.raises(LockTimeoutError) as exc_info:
            await guard.with_lock("k", contender)

        assert exc_info.value.attempts == 3
        assert ran == []
        release.set()
        await holding


class TestNativeTimeout:
    async def test_timeout_raises(self):
        guard = ConcurrencyGuard(NativeLockStrategy(timeout=0.01))
        release = asyncio.Event()

        async def holder():
            await release.wait()

        async def contender():
            return "ran"

        holding = asyncio.create_task(guard.with_lock("k", holder))
        await asyncio.sleep(0)

        with pytest.raises(LockTimeoutError):
            await guard.with_lock("k", contender)

        release.set()
        await holding


class TestBuildGuard:
    def test_native_by_default(self):
        assert isinstance(build_guard().strategy, NativeLockStrategy)

    def test_emulated(self):
        guard = build_guard(native=False, max_retries=3)

        assert isinstance(guard.strategy, EmulatedLockStrategy)
        assert guard.strategy.max_retries == 3
