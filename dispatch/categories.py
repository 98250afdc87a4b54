"""
Category resolver.

Maps events and users to notification categories:
- lists the categories a user can toggle (store-scoped, else global, else a
  built-in default set so the preference screen is never empty)
- resolves a category reference (id or name) to a real category row
- syncs a store's product categories into store-scoped notification categories

Lookups are read through the CacheContext. Syncs are serialized per store by
the ConcurrencyGuard and invalidate the store's cache entries.
"""

import logging
from typing import Optional

from dispatch.cache import CacheContext
from dispatch.locks import ConcurrencyGuard
from shared.data_store import NOTIFICATION_CATEGORIES, DataStore
from shared.errors import BackendError, DataIntegrityError
from shared.models import CategorySyncReport, NotificationCategory, utcnow
from shared.templates import (
    CATEGORY_NEW_PRODUCTS,
    CATEGORY_PROMOTIONS,
    CATEGORY_RESERVATIONS,
    CATEGORY_STOCK,
    CATEGORY_SYSTEM,
)

logger = logging.getLogger("category_resolver")


DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    (CATEGORY_PROMOTIONS, "Sales, promotions and price drops"),
    (CATEGORY_NEW_PRODUCTS, "New products in your favourite stores"),
    (CATEGORY_RESERVATIONS, "Reservation confirmations and reminders"),
    (CATEGORY_STOCK, "Items back in stock"),
)

# Seeded as real rows by ensure_global_categories()
GLOBAL_CATEGORIES = DEFAULT_CATEGORIES + (
    (CATEGORY_SYSTEM, "Account and service messages"),
)


def normalize_name(name: str) -> str:
    return name.strip().lower()


def default_categories() -> list[NotificationCategory]:
    """Built-in categories shown when the backend has none. Never persisted."""
    return [
        NotificationCategory(id=f"default:{name}", name=name, description=description)
        for name, description in DEFAULT_CATEGORIES
    ]


class CategoryResolver:
    """
    Resolves notification categories for users and events.

    Example usage:
        resolver = CategoryResolver(store, cache, guard)
        categories = await resolver.get_categories_for_user("client", store_id="s1")
        report = await resolver.sync_store_categories_to_notifications("s1")
    """

    def __init__(
        self,
        data_store: DataStore,
        cache: CacheContext,
        guard: ConcurrencyGuard,
        ttl: Optional[float] = None,
    ):
        self.data_store = data_store
        self.cache = cache
        self.guard = guard
        self.ttl = ttl

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_categories_for_user(
        self,
        user_type: str,
        store_id: Optional[str] = None,
    ) -> list[NotificationCategory]:
        """
        Categories a user can subscribe to.

        Resolution order:
        1. Active categories scoped to `store_id`
        2. Active global categories
        3. The built-in defaults

        Backend failures degrade to the defaults and are not cached.
        """
        key = f"categories:{store_id or '*'}:{user_type}"
        try:
            return await self.cache.get_or_load(
                key, lambda: self._load_for_user(store_id), self.ttl
            )
        except BackendError as e:
            logger.warning(f"Category lookup failed, using defaults: {e}")
            return default_categories()

    async def _load_for_user(self, store_id: Optional[str]) -> list[NotificationCategory]:
        if store_id:
            rows = await self.data_store.select(
                NOTIFICATION_CATEGORIES,
                where={"scope_store_id": store_id, "is_active": True},
                order_by="name",
            )
            if rows:
                return [NotificationCategory.model_validate(row) for row in rows]

        rows = await self.data_store.select(
            NOTIFICATION_CATEGORIES,
            where={"scope_store_id": None, "is_active": True},
            order_by="name",
        )
        if rows:
            return [NotificationCategory.model_validate(row) for row in rows]

        logger.info("No notification categories in the backend, using defaults")
        return default_categories()

    async def resolve(
        self,
        category_ref: str,
        store_id: Optional[str] = None,
    ) -> Optional[NotificationCategory]:
        """
        Resolve a category id or name to a real, active category row.

        Tried in order: id, name within the store scope, global name. Built-in
        defaults never resolve.
        """
        key = f"category:{store_id or '*'}:{category_ref}"
        category = await self.cache.get_or_load(
            key, lambda: self._lookup(category_ref, store_id), self.ttl
        )
        if category is None:
            # Misses are not cached so a later sync is picked up immediately
            self.cache.invalidate(key)
        return category

    async def _lookup(self, category_ref: str, store_id: Optional[str]) -> Optional[NotificationCategory]:
        row = await self.data_store.get(NOTIFICATION_CATEGORIES, category_ref)
        if row is None:
            name = normalize_name(category_ref)
            scopes = [store_id, None] if store_id else [None]
            for scope in scopes:
                rows = await self.data_store.select(
                    NOTIFICATION_CATEGORIES,
                    where={"scope_store_id": scope, "name": name},
                    limit=1,
                )
                if rows:
                    row = rows[0]
                    break

        if row is None or not row.get("is_active", True):
            return None
        return NotificationCategory.model_validate(row)

    async def require(self, category_ref: str, store_id: Optional[str] = None) -> NotificationCategory:
        """
        Like resolve(), but a missing category is an integrity error.

        Raises:
            DataIntegrityError: If the reference does not resolve
        """
        category = await self.resolve(category_ref, store_id)
        if category is None:
            raise DataIntegrityError(
                f"Category '{category_ref}' does not exist"
                + (f" for store {store_id}" if store_id else "")
            )
        return category

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_store_categories_to_notifications(self, store_id: str) -> CategorySyncReport:
        """
        Create a notification category for each active store category.

        Idempotent: a category is created only when no notification category
        with the same (scope_store_id, name) exists. A failing item is
        reported and does not abort the rest.
        """
        async def run() -> CategorySyncReport:
            report = CategorySyncReport(store_id=store_id)
            store_categories = await self.data_store.get_store_categories(store_id)
            existing_rows = await self.data_store.select(
                NOTIFICATION_CATEGORIES, where={"scope_store_id": store_id}
            )
            existing = {normalize_name(row["name"]) for row in existing_rows}

            for store_category in store_categories:
                name = normalize_name(store_category.name)
                if not name:
                    report.failed.append(store_category.id)
                    logger.error(f"Store category {store_category.id} has an empty name")
                    continue
                if name in existing:
                    report.skipped.append(name)
                    continue
                try:
                    await self.data_store.insert(NOTIFICATION_CATEGORIES, {
                        "name": name,
                        "description": store_category.description or f"Notifications for {store_category.name}",
                        "is_active": True,
                        "scope_store_id": store_id,
                        "created_at": utcnow(),
                    })
                except Exception as e:
                    logger.error(f"Failed to sync category '{name}' for store {store_id}: {e}")
                    report.failed.append(name)
                    continue
                existing.add(name)
                report.created.append(name)

            self.invalidate(store_id)
            logger.info(
                f"Category sync for store {store_id}: {len(report.created)} created, "
                f"{len(report.skipped)} skipped, {len(report.failed)} failed"
            )
            return report

        return await self.guard.with_lock(f"category-sync:{store_id}", run)

    async def ensure_global_categories(self) -> list[str]:
        """
        Create the built-in global categories that are missing.

        Returns:
            Names of the categories created
        """
        async def run() -> list[str]:
            rows = await self.data_store.select(NOTIFICATION_CATEGORIES, where={"scope_store_id": None})
            existing = {normalize_name(row["name"]) for row in rows}
            created = []
            for name, description in GLOBAL_CATEGORIES:
                if name in existing:
                    continue
                await self.data_store.insert(NOTIFICATION_CATEGORIES, {
                    "name": name,
                    "description": description,
                    "is_active": True,
                    "scope_store_id": None,
                    "created_at": utcnow(),
                })
                created.append(name)
            if created:
                self.invalidate()
            return created

        return await self.guard.with_lock("category-sync:global", run)

    def invalidate(self, store_id: Optional[str] = None) -> int:
        """
        Drop cached category lookups.

        With a store id only that store's entries go; without one everything
        goes, since every store falls back to the global categories.
        """
        if store_id is None:
            return self.cache.invalidate_prefix("categories:") + self.cache.invalidate_prefix("category:")
        return (
            self.cache.invalidate_prefix(f"categories:{store_id}:")
            + self.cache.invalidate_prefix(f"category:{store_id}:")
        )
