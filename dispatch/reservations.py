"""
Reservation expiry sweep.

Periodically looks for active reservations that expire within the warning
window and have not been alerted yet, and asks the coordinator to send the
reminder. The coordinator's per-reservation lock makes overlapping sweeps
harmless.

The wording depends on the coordinator's urgent threshold, not on the window:
with the default 15 minute window and 30 minute threshold every reminder sent
by the sweep is the urgent one.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from dispatch.dispatcher import DispatchCoordinator
from shared.data_store import RESERVATIONS, DataStore
from shared.models import Reservation, ReservationStatus, utcnow

logger = logging.getLogger("reservation_sweeper")


class ReservationExpirySweeper:
    """Background task that sends reservation expiry reminders."""

    def __init__(
        self,
        data_store: DataStore,
        coordinator: DispatchCoordinator,
        interval_seconds: float = 60.0,
        warning_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_store = data_store
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.warning_minutes = warning_minutes
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def due_reservations(self, now: Optional[datetime] = None) -> list[Reservation]:
        now = now or self.clock()
        horizon = now + timedelta(minutes=self.warning_minutes)
        rows = await self.data_store.select(
            RESERVATIONS,
            where={"status": ReservationStatus.ACTIVE.value, "alert_sent": False},
        )
        reservations = [Reservation.model_validate(row) for row in rows]
        return [r for r in reservations if now < r.expires_at <= horizon]

    async def sweep_once(self) -> int:
        """
        Run one sweep.

        Returns:
            Number of reservations that got an alert dispatched
        """
        now = self.clock()
        alerted = 0
        for reservation in await self.due_reservations(now):
            try:
                summary = await self.coordinator.notify_reservation_expiring(reservation.id, now=now)
            except Exception as e:
                logger.error(f"Expiry alert for reservation {reservation.id} failed: {e}")
                continue
            if summary.total_candidates:
                alerted += 1
        if alerted:
            logger.info(f"Sent {alerted} reservation expiry alert(s)")
        return alerted

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Reservation sweep failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Reservation sweeper started (every {self.interval_seconds:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reservation sweeper stopped")
