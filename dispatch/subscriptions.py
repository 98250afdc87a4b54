"""
Push subscription registry.

One row per browser endpoint. Subscribing upserts on the endpoint so a
re-subscribe from a second tab updates the existing row instead of adding a
duplicate; upserts for the same user are serialized by the ConcurrencyGuard.
An endpoint the push service reports as gone is marked inactive.
"""

import logging
from typing import Any, Optional, Union

from dispatch.locks import ConcurrencyGuard
from shared.data_store import PUSH_SUBSCRIPTIONS, DataStore
from shared.models import PushKeys, PushSubscriptionRecord, utcnow

logger = logging.getLogger("subscriptions")


class SubscriptionRegistry:
    """Create, look up and invalidate push subscriptions."""

    def __init__(self, data_store: DataStore, guard: ConcurrencyGuard):
        self.data_store = data_store
        self.guard = guard

    async def subscribe(
        self,
        user_id: str,
        endpoint: str,
        keys: Union[PushKeys, dict[str, Any]],
        category: Optional[str] = None,
    ) -> PushSubscriptionRecord:
        """Register (or re-activate) a push endpoint for a user."""
        record = PushSubscriptionRecord(
            user_id=user_id,
            endpoint=endpoint,
            keys=keys if isinstance(keys, PushKeys) else PushKeys.model_validate(keys),
            category=category,
        )

        async def upsert() -> PushSubscriptionRecord:
            row = record.model_dump(exclude={"id"})
            row["updated_at"] = utcnow()
            stored = await self.data_store.upsert(PUSH_SUBSCRIPTIONS, row, on_conflict=("endpoint",))
            logger.info(f"Push subscription saved for {user_id}")
            return PushSubscriptionRecord.model_validate(stored)

        return await self.guard.with_lock(f"push-subscription:{user_id}", upsert)

    async def unsubscribe(self, endpoint: str) -> bool:
        """Delete the subscription for an endpoint. Returns False if unknown."""
        row = await self._find(endpoint)
        if row is None:
            return False
        removed = await self.data_store.delete(PUSH_SUBSCRIPTIONS, row["id"])
        if removed:
            logger.info(f"Push subscription removed for {row['user_id']}")
        return removed

    async def mark_expired(self, endpoint: str) -> bool:
        """Invalidate an endpoint the push service no longer accepts."""
        row = await self._find(endpoint)
        if row is None or not row.get("is_active", True):
            return False
        await self.data_store.update(
            PUSH_SUBSCRIPTIONS, row["id"], {"is_active": False, "updated_at": utcnow()}
        )
        logger.info(f"Push subscription for {row['user_id']} marked inactive (endpoint expired)")
        return True

    async def active_for_user(
        self,
        user_id: str,
        category: Optional[str] = None,
    ) -> list[PushSubscriptionRecord]:
        """
        Active subscriptions of a user.

        With a category, subscriptions bound to another category are left out;
        unbound subscriptions always match.
        """
        rows = await self.data_store.select(
            PUSH_SUBSCRIPTIONS, where={"user_id": user_id, "is_active": True}
        )
        return [
            PushSubscriptionRecord.model_validate(row) for row in rows
            if category is None or row.get("category") in (None, category)
        ]

    async def subscribed_users(self, category: Optional[str] = None) -> list[str]:
        """Ids of users with at least one active subscription, in first-seen order."""
        rows = await self.data_store.select(
            PUSH_SUBSCRIPTIONS, where={"is_active": True}, order_by="updated_at"
        )
        users: list[str] = []
        for row in rows:
            if category is not None and row.get("category") not in (None, category):
                continue
            if row["user_id"] not in users:
                users.append(row["user_id"])
        return users

    async def _find(self, endpoint: str) -> Optional[dict[str, Any]]:
        rows = await self.data_store.select(PUSH_SUBSCRIPTIONS, where={"endpoint": endpoint}, limit=1)
        return rows[0] if rows else None
