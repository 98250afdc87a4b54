"""
Concurrency guard: named locks around critical sections.

At most one critical section per name runs at a time. Used to serialize
reservation-alert check-and-write, subscription upserts racing across tabs,
preference toggles per (user, category), category syncs and history cleanup.

Two strategies sit behind one interface and are selected at construction:
- NativeLockStrategy: a per-name asyncio.Lock
- EmulatedLockStrategy: a set of held names polled with bounded exponential
  backoff, for hosts where a native primitive is not available

If the emulated strategy cannot acquire a lock within its retry budget it
raises LockTimeoutError. It never runs the critical section unlocked.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from shared.errors import LockTimeoutError
from shared.models import utcnow

logger = logging.getLogger("concurrency_guard")

T = TypeVar("T")


@dataclass
class LockTicket:
    """A held lock. Lives only for the duration of its critical section."""
    name: str
    acquired_at: datetime = field(default_factory=utcnow)


class LockStrategy(ABC):
    """Acquire/release primitive for named locks."""

    @abstractmethod
    async def acquire(self, name: str) -> None:
        """Block until `name` is held, or raise LockTimeoutError."""

    @abstractmethod
    def release(self, name: str) -> None:
        """Release a held name."""


class NativeLockStrategy(LockStrategy):
    """Per-name asyncio.Lock, optionally with an acquisition timeout."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    async def acquire(self, name: str) -> None:
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._waiters[name] = self._waiters.get(name, 0) + 1
        try:
            if self.timeout is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), self.timeout)
                except asyncio.TimeoutError:
                    raise LockTimeoutError(name, attempts=1) from None
        finally:
            self._waiters[name] -= 1

    def release(self, name: str) -> None:
        lock = self._locks[name]
        lock.release()
        # Drop idle locks so the map does not grow with every name ever used
        if self._waiters.get(name, 0) == 0 and not lock.locked():
            self._locks.pop(name, None)
            self._waiters.pop(name, None)


class EmulatedLockStrategy(LockStrategy):
    """
    Lock emulation with a held-names set and bounded retry-with-backoff.

    The wait before retry n is min(base_delay * 2**n, max_delay).
    """

    def __init__(self, max_retries: int = 10, base_delay: float = 0.05, max_delay: float = 1.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._held: set[str] = set()

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def acquire(self, name: str) -> None:
        for attempt in range(self.max_retries + 1):
            if name not in self._held:
                # No await between the check and the add
                self._held.add(name)
                return
            if attempt < self.max_retries:
                delay = self.backoff(attempt)
                logger.debug(f"Lock '{name}' busy, retry {attempt + 1} in {delay:.3f}s")
                await asyncio.sleep(delay)
        raise LockTimeoutError(name, attempts=self.max_retries + 1)

    def release(self, name: str) -> None:
        self._held.discard(name)


class ConcurrencyGuard:
    """
    Named-lock facade used by every component that needs serialization.

    Example usage:
        guard = ConcurrencyGuard(NativeLockStrategy())
        result = await guard.with_lock("reservation-alert:r1", send_alert_once)
    """

    def __init__(self, strategy: Optional[LockStrategy] = None):
        self.strategy = strategy or NativeLockStrategy()
        self._tickets: dict[str, LockTicket] = {}

    async def with_lock(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run `fn` while holding the lock `name`.

        Raises:
            LockTimeoutError: If the lock could not be acquired
        """
        try:
            await self.strategy.acquire(name)
        except LockTimeoutError:
            logger.error(f"Could not acquire lock '{name}', aborting operation")
            raise

        self._tickets[name] = LockTicket(name=name)
        try:
            return await fn()
        finally:
            self._tickets.pop(name, None)
            self.strategy.release(name)

    def active_tickets(self) -> list[LockTicket]:
        return list(self._tickets.values())

    def is_held(self, name: str) -> bool:
        return name in self._tickets


def build_guard(
    native: bool = True,
    max_retries: int = 10,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
) -> ConcurrencyGuard:
    """Create a guard with the strategy chosen by configuration."""
    if native:
        return ConcurrencyGuard(NativeLockStrategy())
    return ConcurrencyGuard(EmulatedLockStrategy(max_retries, base_delay, max_delay))
