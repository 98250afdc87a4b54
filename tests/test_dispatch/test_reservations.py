"""
Tests for the reservation expiry sweep.
"""

import asyncio
from datetime import timedelta

import pytest

from dispatch.dispatcher import DispatchCoordinator
from dispatch.reservations import ReservationExpirySweeper
from shared.data_store import NOTIFICATION_HISTORY, RESERVATIONS, DataStore
from shared.models import utcnow


NOW = utcnow()


def reservation(reservation_id: str, minutes: float, **overrides) -> dict:
    row = {
        "id": reservation_id,
        "product_id": "prod-002",
        "client_id": "user-003",
        "store_id": "store-001",
        "status": "active",
        "expires_at": NOW + timedelta(minutes=minutes),
        "alert_sent": False,
    }
    row.update(overrides)
    return row


@pytest.fixture
def sweeper(data_store: DataStore, coordinator: DispatchCoordinator) -> ReservationExpirySweeper:
    data_store.seed(RESERVATIONS, [
        reservation("due", 10),
        reservation("later", 60),
        reservation("alerted", 5, alert_sent=True),
        reservation("past", -5),
        reservation("done", 8, status="completed"),
    ])
    return ReservationExpirySweeper(
        data_store, coordinator, interval_seconds=0.01, warning_minutes=15, clock=lambda: NOW
    )


class TestDueReservations:
    """Tests for picking reservations inside the warning window."""

    async def test_only_active_unalerted_inside_window(self, sweeper: ReservationExpirySweeper):
        due = await sweeper.due_reservations()

        assert [r.id for r in due] == ["due"]

    async def test_window_edge_is_included(self, sweeper: ReservationExpirySweeper, data_store):
        data_store.seed(RESERVATIONS, [reservation("edge", 15)])

        due = await sweeper.due_reservations()

        assert sorted(r.id for r in due) == ["due", "edge"]


class TestSweep:
    """Tests for sweep_once."""

    async def test_sweep_sends_alert_once(self, sweeper: ReservationExpirySweeper, data_store):
        assert await sweeper.sweep_once() == 1
        assert await sweeper.sweep_once() == 0

        rows = await data_store.select(NOTIFICATION_HISTORY, where={"user_id": "user-003"})
        assert len(rows) == 1
        assert "Chef Knife" in rows[0]["message"]

    async def test_default_window_sends_urgent_wording(self, sweeper: ReservationExpirySweeper, data_store):
        await sweeper.sweep_once()

        [row] = await data_store.select(NOTIFICATION_HISTORY)
        assert row["title"] == "🚨 URGENT: Reservation Expiring"

    async def test_wider_window_sends_regular_reminder(
        self, sweeper: ReservationExpirySweeper, data_store, coordinator
    ):
        """Test that a window past the urgent threshold reaches the regular wording."""
        wide = ReservationExpirySweeper(data_store, coordinator, warning_minutes=90, clock=lambda: NOW)

        assert await wide.sweep_once() == 2

        titles = [r["title"] for r in await data_store.select(NOTIFICATION_HISTORY)]
        assert sorted(titles) == ["⏰ Reservation Expiring", "🚨 URGENT: Reservation Expiring"]

    async def test_overlapping_sweeps(self, sweeper: ReservationExpirySweeper, data_store):
        """Test that two sweeps racing for one reservation send a single alert."""
        first, second = await asyncio.gather(sweeper.sweep_once(), sweeper.sweep_once())

        assert first + second == 1
        assert data_store.row_count(NOTIFICATION_HISTORY) == 1

    async def test_failure_for_one_reservation_does_not_stop_sweep(
        self, sweeper: ReservationExpirySweeper, data_store, coordinator, monkeypatch
    ):
        data_store.seed(RESERVATIONS, [reservation("due-2", 12)])
        original = coordinator.notify_reservation_expiring

        async def flaky(reservation_id, now=None):
            if reservation_id == "due":
                raise RuntimeError("boom")
            return await original(reservation_id, now=now)

        monkeypatch.setattr(coordinator, "notify_reservation_expiring", flaky)

        assert await sweeper.sweep_once() == 1


class TestLifecycle:
    """Tests for the background loop."""

    async def test_start_and_stop(self, sweeper: ReservationExpirySweeper, data_store):
        sweeper.start()
        assert sweeper.is_running

        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.is_running
        assert data_store.row_count(NOTIFICATION_HISTORY) == 1

    async def test_stop_without_start(self, sweeper: ReservationExpirySweeper):
        await sweeper.stop()

        assert not sweeper.is_running
