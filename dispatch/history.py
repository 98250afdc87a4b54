"""
Notification history.

Every delivery writes exactly one NotificationRecord. After that, only
mark-read and delete touch it. Old rows are removed by a retention sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from dispatch.locks import ConcurrencyGuard
from shared.data_store import NOTIFICATION_HISTORY, DataStore
from shared.models import NotificationRecord, NotificationStats, utcnow

logger = logging.getLogger("notification_history")


class NotificationHistory:
    """Persisted notification rows per user."""

    def __init__(self, data_store: DataStore, guard: ConcurrencyGuard, retention_days: int = 30):
        self.data_store = data_store
        self.guard = guard
        self.retention_days = retention_days

    async def record(self, record: NotificationRecord) -> NotificationRecord:
        row = await self.data_store.insert(NOTIFICATION_HISTORY, record.model_dump())
        return NotificationRecord.model_validate(row)

    async def get_user_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[NotificationRecord]:
        """A user's notifications, newest first."""
        where: dict[str, Any] = {"user_id": user_id}
        if unread_only:
            where["is_read"] = False
        rows = await self.data_store.select(
            NOTIFICATION_HISTORY, where=where, order_by="created_at", descending=True, limit=limit
        )
        return [NotificationRecord.model_validate(row) for row in rows]

    async def mark_as_read(self, notification_id: str) -> Optional[NotificationRecord]:
        """Mark one notification read. Returns None if it does not exist."""
        row = await self.data_store.update(NOTIFICATION_HISTORY, notification_id, {"is_read": True})
        return NotificationRecord.model_validate(row) if row else None

    async def mark_all_as_read(self, user_id: str) -> int:
        rows = await self.data_store.select(
            NOTIFICATION_HISTORY, where={"user_id": user_id, "is_read": False}
        )
        for row in rows:
            await self.data_store.update(NOTIFICATION_HISTORY, row["id"], {"is_read": True})
        return len(rows)

    async def delete_notification(self, notification_id: str) -> bool:
        return await self.data_store.delete(NOTIFICATION_HISTORY, notification_id)

    async def get_stats(self, user_id: str) -> NotificationStats:
        total = await self.data_store.count(NOTIFICATION_HISTORY, where={"user_id": user_id})
        unread = await self.data_store.count(
            NOTIFICATION_HISTORY, where={"user_id": user_id, "is_read": False}
        )
        return NotificationStats(total=total, unread=unread)

    async def cleanup_old_notifications(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Delete notifications older than the retention period.

        Serialized so overlapping sweeps never run together.

        Returns:
            Number of rows removed
        """
        cutoff = (now or utcnow()) - timedelta(days=days if days is not None else self.retention_days)

        async def sweep() -> int:
            removed = await self.data_store.delete_where(
                NOTIFICATION_HISTORY,
                lambda row: _as_datetime(row.get("created_at")) < cutoff,
            )
            logger.info(f"Removed {removed} notification(s) older than {cutoff:%Y-%m-%d}")
            return removed

        return await self.guard.with_lock("history-cleanup", sweep)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.max.replace(tzinfo=utcnow().tzinfo)
