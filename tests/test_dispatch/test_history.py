"""
Tests for notification history.
"""

from datetime import timedelta

import pytest

from dispatch.history import NotificationHistory
from shared.data_store import NOTIFICATION_HISTORY
from shared.models import NotificationRecord, utcnow


def make_record(user_id: str = "user-001", title: str = "Hello", **kwargs) -> NotificationRecord:
    return NotificationRecord(user_id=user_id, title=title, message="Body", category="promotions", **kwargs)


class TestReadWrite:
    """Tests for recording and listing notifications."""

    async def test_newest_first(self, history: NotificationHistory):
        now = utcnow()
        await history.record(make_record(title="old", created_at=now - timedelta(hours=1)))
        await history.record(make_record(title="new", created_at=now))

        titles = [r.title for r in await history.get_user_notifications("user-001")]

        assert titles == ["new", "old"]

    async def test_unread_only_and_limit(self, history: NotificationHistory):
        first = await history.record(make_record(title="a"))
        await history.record(make_record(title="b"))
        await history.record(make_record(title="c"))
        await history.mark_as_read(first.id)

        unread = await history.get_user_notifications("user-001", unread_only=True)
        limited = await history.get_user_notifications("user-001", limit=1)

        assert sorted(r.title for r in unread) == ["b", "c"]
        assert len(limited) == 1

    async def test_other_users_not_listed(self, history: NotificationHistory):
        await history.record(make_record(user_id="user-002"))

        assert await history.get_user_notifications("user-001") == []


class TestReadState:
    """Tests for mark-read, delete and stats."""

    async def test_mark_as_read(self, history: NotificationHistory):
        record = await history.record(make_record())

        updated = await history.mark_as_read(record.id)

        assert updated.is_read is True
        assert await history.mark_as_read("missing") is None

    async def test_mark_all_as_read(self, history: NotificationHistory):
        for _ in range(3):
            await history.record(make_record())

        assert await history.mark_all_as_read("user-001") == 3
        assert (await history.get_stats("user-001")).unread == 0

    async def test_delete(self, history: NotificationHistory):
        record = await history.record(make_record())

        assert await history.delete_notification(record.id) is True
        assert await history.delete_notification(record.id) is False

    async def test_stats(self, history: NotificationHistory):
        record = await history.record(make_record())
        await history.record(make_record())
        await history.mark_as_read(record.id)

        stats = await history.get_stats("user-001")

        assert (stats.total, stats.unread) == (2, 1)


class TestCleanup:
    """Tests for the retention sweep."""

    async def test_removes_only_old_rows(self, history: NotificationHistory, data_store):
        now = utcnow()
        await history.record(make_record(title="ancient", created_at=now - timedelta(days=45)))
        await history.record(make_record(title="recent", created_at=now - timedelta(days=5)))

        removed = await history.cleanup_old_notifications(now=now)

        assert removed == 1
        assert [r.title for r in await history.get_user_notifications("user-001")] == ["recent"]

    async def test_custom_days(self, history: NotificationHistory):
        now = utcnow()
        await history.record(make_record(created_at=now - timedelta(days=5)))

        assert await history.cleanup_old_notifications(days=3, now=now) == 1

    async def test_string_timestamps(self, history: NotificationHistory, data_store):
        data_store.seed(NOTIFICATION_HISTORY, [{
            "user_id": "user-001", "title": "imported", "message": "m", "category": "system",
            "created_at": "2020-01-01T00:00:00Z",
        }])

        assert await history.cleanup_old_notifications() == 1

    async def test_runs_under_lock(self, history: NotificationHistory, guard):
        held = []
        original = history.data_store.delete_where

        async def spy(table, predicate):
            held.append(guard.is_held("history-cleanup"))
            return await original(table, predicate)

        history.data_store.delete_where = spy

        await history.cleanup_old_notifications()

        assert held == [True]


@pytest.mark.parametrize("days", [1, 30])
async def test_nothing_to_clean(history: NotificationHistory, days):
    assert await history.cleanup_old_notifications(days=days) == 0
