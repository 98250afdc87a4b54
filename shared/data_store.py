"""
In-memory backend data store.

This module stands in for the managed backend the engine talks to. It offers
the collaborator contract the engine depends on:
- async CRUD over named tables of dict rows
- upsert with a conflict target
- a realtime change feed (see change_feed.py) fed by every write

Design decisions:
- Every call is an awaitable round-trip with an optional simulated latency, so
  interleavings in tests match the real backend's suspension points
- Tables can be seeded from JSON fixtures (<data_dir>/<table>.json), loaded lazily
- Outages can be simulated per table; affected calls raise BackendError
- Rows are copied in and out so callers never share mutable state with the store
"""

import asyncio
import copy
import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from shared.change_feed import ChangeEvent, ChangeFeed, ChangeType
from shared.errors import BackendError
from shared.models import (
    Product,
    Reservation,
    StoreCategory,
    UserProfile,
    new_id,
)

logger = logging.getLogger("data_store")

Row = dict[str, Any]
RowPredicate = Callable[[Row], bool]

# Engine-owned tables
NOTIFICATION_CATEGORIES = "notification_categories"
USER_PREFERENCES = "user_notification_preferences"
PUSH_SUBSCRIPTIONS = "push_subscriptions"
NOTIFICATION_HISTORY = "notification_history"

# Catalog tables (owned by external collaborators)
STORE_CATEGORIES = "store_categories"
PRODUCTS = "products"
PROMOTIONS = "promotions"
RESERVATIONS = "reservations"
USERS = "users"

TABLES = (
    NOTIFICATION_CATEGORIES,
    USER_PREFERENCES,
    PUSH_SUBSCRIPTIONS,
    NOTIFICATION_HISTORY,
    STORE_CATEGORIES,
    PRODUCTS,
    PROMOTIONS,
    RESERVATIONS,
    USERS,
)


class DataStore:
    """
    Table-oriented async data store with a realtime change feed.

    Example usage:
        store = DataStore()
        row = await store.insert("products", {"store_id": "s1", "name": "Lamp", "price": 10})
        await store.update("products", row["id"], {"price": 8})
        rows = await store.select("products", where={"store_id": "s1"})
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        feed: Optional[ChangeFeed] = None,
        latency: float = 0.0,
    ):
        """
        Initialize the data store.

        Args:
            data_dir: Directory with <table>.json fixtures, or None for empty tables
            feed: Change feed to publish writes to (defaults to a new feed)
            latency: Simulated round-trip latency in seconds
        """
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.feed = feed or ChangeFeed()
        self.latency = latency
        self.call_counts: Counter = Counter()

        # Loaded lazily
        self._tables: Optional[dict[str, dict[str, Row]]] = None
        self._failing: dict[str, str] = {}

    # =========================================================================
    # Loading
    # =========================================================================

    def _load_json(self, filename: str) -> list[Row]:
        """Load a JSON fixture file."""
        if self.data_dir is None:
            return []
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r") as f:
            return json.load(f)

    def _ensure_loaded(self) -> dict[str, dict[str, Row]]:
        if self._tables is None:
            self._tables = {table: {} for table in TABLES}
            for table in TABLES:
                for row in self._load_json(f"{table}.json"):
                    row = dict(row)
                    row.setdefault("id", new_id())
                    self._tables[table][row["id"]] = row
        return self._tables

    def _table(self, table: str) -> dict[str, Row]:
        tables = self._ensure_loaded()
        if table not in tables:
            raise BackendError(f"Unknown table: {table}", table=table)
        return tables[table]

    def seed(self, table: str, rows: Iterable[Row]) -> list[Row]:
        """
        Put rows directly into a table without publishing changes.

        Used by fixtures and the demo to set up catalog state.
        """
        stored = []
        target = self._table(table)
        for row in rows:
            row = copy.deepcopy(dict(row))
            row.setdefault("id", new_id())
            target[row["id"]] = row
            stored.append(copy.deepcopy(row))
        return stored

    def reload(self) -> None:
        """Drop all in-memory state and reload fixtures on next access."""
        self._tables = None
        self.call_counts.clear()

    # =========================================================================
    # Failure Simulation
    # =========================================================================

    def fail_table(self, table: str, message: str = "Simulated backend outage") -> None:
        """Make every call touching `table` raise BackendError."""
        self._failing[table] = message

    def heal_table(self, table: str) -> None:
        self._failing.pop(table, None)

    async def _roundtrip(self, table: str, operation: str) -> None:
        self.call_counts[(table, operation)] += 1
        await asyncio.sleep(self.latency)
        if table in self._failing:
            raise BackendError(f"{self._failing[table]} ({operation} on {table})", table=table)

    def _publish(self, table: str, change_type: ChangeType, new: Row, old: Optional[Row]) -> None:
        self.feed.publish(ChangeEvent(
            table=table,
            change_type=change_type,
            new=copy.deepcopy(new),
            old=copy.deepcopy(old) if old is not None else None,
        ))

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, table: str, row_id: str) -> Optional[Row]:
        """Get a row by id."""
        await self._roundtrip(table, "get")
        row = self._table(table).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def select(
        self,
        table: str,
        where: Optional[dict[str, Any]] = None,
        predicate: Optional[RowPredicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        """
        Select rows matching an equality filter and/or a predicate.

        Args:
            table: Table name
            where: Column -> value equality filter
            predicate: Extra row filter
            order_by: Column to sort by
            descending: Sort direction
            limit: Maximum number of rows
        """
        await self._roundtrip(table, "select")
        rows = [
            row for row in self._table(table).values()
            if _matches(row, where) and (predicate is None or predicate(row))
        ]
        if order_by is not None:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(row) for row in rows]

    async def count(self, table: str, where: Optional[dict[str, Any]] = None) -> int:
        await self._roundtrip(table, "count")
        return sum(1 for row in self._table(table).values() if _matches(row, where))

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row, assigning an id when missing."""
        await self._roundtrip(table, "insert")
        target = self._table(table)
        row = copy.deepcopy(dict(row))
        row.setdefault("id", new_id())
        if row["id"] in target:
            raise BackendError(f"Duplicate key {row['id']} in {table}", table=table)
        target[row["id"]] = row
        self._publish(table, ChangeType.INSERT, row, None)
        return copy.deepcopy(row)

    async def update(self, table: str, row_id: str, changes: Row) -> Optional[Row]:
        """
        Update columns of a row in place.

        Returns:
            The updated row, or None if it does not exist
        """
        await self._roundtrip(table, "update")
        target = self._table(table)
        current = target.get(row_id)
        if current is None:
            return None
        old = copy.deepcopy(current)
        current.update(copy.deepcopy(changes))
        current["id"] = row_id
        self._publish(table, ChangeType.UPDATE, current, old)
        return copy.deepcopy(current)

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        """
        Insert a row, or update the existing row that matches on `on_conflict`.

        The lookup and the write happen in one step, so concurrent upserts on
        the same conflict target never produce duplicates.
        """
        await self._roundtrip(table, "upsert")
        target = self._table(table)
        key = {column: row.get(column) for column in on_conflict}
        existing = next((r for r in target.values() if _matches(r, key)), None)
        if existing is None:
            new_row = copy.deepcopy(dict(row))
            new_row.setdefault("id", new_id())
            target[new_row["id"]] = new_row
            self._publish(table, ChangeType.INSERT, new_row, None)
            return copy.deepcopy(new_row)

        old = copy.deepcopy(existing)
        changes = {k: v for k, v in copy.deepcopy(dict(row)).items() if k != "id"}
        existing.update(changes)
        self._publish(table, ChangeType.UPDATE, existing, old)
        return copy.deepcopy(existing)

    async def delete(self, table: str, row_id: str) -> bool:
        """Delete a row by id. Returns False if it did not exist."""
        await self._roundtrip(table, "delete")
        old = self._table(table).pop(row_id, None)
        if old is None:
            return False
        self._publish(table, ChangeType.DELETE, {}, old)
        return True

    async def delete_where(self, table: str, predicate: RowPredicate) -> int:
        """Delete every row matching a predicate. Returns the number removed."""
        await self._roundtrip(table, "delete")
        target = self._table(table)
        doomed = [row_id for row_id, row in target.items() if predicate(row)]
        for row_id in doomed:
            old = target.pop(row_id)
            self._publish(table, ChangeType.DELETE, {}, old)
        return len(doomed)

    # =========================================================================
    # Catalog Lookups
    # =========================================================================

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await self.get(PRODUCTS, product_id)
        return Product.model_validate(row) if row else None

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        row = await self.get(RESERVATIONS, reservation_id)
        return Reservation.model_validate(row) if row else None

    async def get_store_categories(self, store_id: str) -> list[StoreCategory]:
        rows = await self.select(
            STORE_CATEGORIES, where={"store_id": store_id, "is_active": True}, order_by="name"
        )
        return [StoreCategory.model_validate(row) for row in rows]

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        row = await self.get(USERS, user_id)
        return UserProfile.model_validate(row) if row else None

    async def get_users(self, user_type: Optional[str] = None) -> list[UserProfile]:
        where = {"user_type": user_type} if user_type else None
        rows = await self.select(USERS, where=where, order_by="id")
        return [UserProfile.model_validate(row) for row in rows]

    def row_count(self, table: str) -> int:
        """Synchronous row count, for assertions."""
        return len(self._table(table))


def _matches(row: Row, where: Optional[dict[str, Any]]) -> bool:
    if not where:
        return True
    return all(row.get(column) == value for column, value in where.items())
