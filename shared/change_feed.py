"""
In-memory realtime change feed for the backend data store.

The data store publishes a ChangeEvent for every insert, update and delete.
Consumers subscribe per (table, change type, optional row filter) and get back
a FeedSubscription they can cancel. In production this is the backend's
realtime channel; here it is a small pub/sub that the tests can drive.

Design decisions:
- Handlers are coroutines scheduled as tasks, so a write never waits for the
  notifications it triggers
- Each subscription carries its own connection state machine:
      SUBSCRIBING -> ACTIVE -> (ERROR -> RECONNECTING -> ACTIVE) -> UNSUBSCRIBED
- Only ACTIVE subscriptions receive changes; changes published while a
  subscription is reconnecting are missed, as with a real socket
- Unsubscribing cancels the subscription's in-flight handler tasks
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from shared.models import utcnow

logger = logging.getLogger("change_feed")


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionState(str, Enum):
    SUBSCRIBING = "SUBSCRIBING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    RECONNECTING = "RECONNECTING"
    UNSUBSCRIBED = "UNSUBSCRIBED"


_TRANSITIONS: dict[SubscriptionState, set[SubscriptionState]] = {
    SubscriptionState.SUBSCRIBING: {
        SubscriptionState.ACTIVE,
        SubscriptionState.ERROR,
        SubscriptionState.UNSUBSCRIBED,
    },
    SubscriptionState.ACTIVE: {SubscriptionState.ERROR, SubscriptionState.UNSUBSCRIBED},
    SubscriptionState.ERROR: {SubscriptionState.RECONNECTING, SubscriptionState.UNSUBSCRIBED},
    SubscriptionState.RECONNECTING: {
        SubscriptionState.ACTIVE,
        SubscriptionState.ERROR,
        SubscriptionState.UNSUBSCRIBED,
    },
    SubscriptionState.UNSUBSCRIBED: set(),
}


@dataclass
class ChangeEvent:
    """
    A row-level change in a backend table.

    Attributes:
        table: Table the change happened in
        change_type: INSERT, UPDATE or DELETE
        new: Row after the change (empty for DELETE)
        old: Row before the change (None for INSERT)
    """
    table: str
    change_type: ChangeType
    new: dict[str, Any] = field(default_factory=dict)
    old: Optional[dict[str, Any]] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def row(self) -> dict[str, Any]:
        """The row the change refers to (old row for deletes)."""
        return self.new or self.old or {}

    def __str__(self) -> str:
        return f"Change({self.table}.{self.change_type.value}, id={self.row.get('id')})"


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
StateCallback = Callable[["FeedSubscription", SubscriptionState], None]


class FeedSubscription:
    """
    A cancelable subscription to one (table, change type, row filter).

    Returned by ChangeFeed.listen(); call unsubscribe() to release it.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        change_type: Optional[ChangeType],
        handler: ChangeHandler,
        row_filter: Optional[dict[str, Any]] = None,
        on_state: Optional[StateCallback] = None,
    ):
        self.feed = feed
        self.table = table
        self.change_type = change_type
        self.handler = handler
        self.row_filter = dict(row_filter or {})
        self.on_state = on_state
        self.subscription_id = str(uuid4())
        self.state_history: list[SubscriptionState] = [SubscriptionState.SUBSCRIBING]
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> SubscriptionState:
        return self.state_history[-1]

    @property
    def is_active(self) -> bool:
        return self.state == SubscriptionState.ACTIVE

    @property
    def channel_name(self) -> str:
        kind = self.change_type.value if self.change_type else "*"
        filt = ",".join(f"{k}=eq.{v}" for k, v in sorted(self.row_filter.items()))
        return f"{self.table}-{kind}-{filt}"

    def transition(self, new_state: SubscriptionState) -> None:
        """Move to a new connection state, rejecting illegal transitions."""
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal subscription transition {self.state.value} -> {new_state.value}"
            )
        self.state_history.append(new_state)
        logger.debug(f"Channel {self.channel_name}: {new_state.value}")
        if self.on_state is not None:
            try:
                self.on_state(self, new_state)
            except Exception as e:
                logger.error(f"State callback failed for {self.channel_name}: {e}")

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.change_type is not None and change.change_type != self.change_type:
            return False
        row = change.row
        return all(row.get(key) == value for key, value in self.row_filter.items())

    def unsubscribe(self) -> bool:
        """
        Release the subscription and cancel its in-flight handlers.

        Returns:
            True if the subscription was live, False if already released
        """
        if self.state == SubscriptionState.UNSUBSCRIBED:
            return False
        self.feed._remove(self)
        self.transition(SubscriptionState.UNSUBSCRIBED)
        for task in list(self._tasks):
            task.cancel()
        return True

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class ChangeFeed:
    """
    Pub/sub hub for row-level changes.

    Example usage:
        feed = ChangeFeed()

        async def on_product(change):
            print(change.new["name"])

        sub = feed.listen("products", ChangeType.INSERT, on_product)
        feed.publish(ChangeEvent("products", ChangeType.INSERT, new={...}))
        await feed.drain()
        sub.unsubscribe()
    """

    def __init__(self):
        self._subscriptions: dict[str, list[FeedSubscription]] = defaultdict(list)
        self._interrupted: set[str] = set()
        self._pending: set[asyncio.Task] = set()
        self._event_log: list[ChangeEvent] = []
        self._log_events: bool = True

    def listen(
        self,
        table: str,
        change_type: Optional[ChangeType],
        handler: ChangeHandler,
        row_filter: Optional[dict[str, Any]] = None,
        on_state: Optional[StateCallback] = None,
    ) -> FeedSubscription:
        """
        Subscribe to changes on a table.

        Args:
            table: Table name
            change_type: Change type to receive, or None for all
            handler: Coroutine called with each matching ChangeEvent
            row_filter: Equality filter applied to the changed row
            on_state: Optional callback for connection state changes

        Returns:
            The live FeedSubscription
        """
        subscription = FeedSubscription(
            self, table, change_type, handler, row_filter=row_filter, on_state=on_state
        )
        self._subscriptions[table].append(subscription)
        if table in self._interrupted:
            subscription.transition(SubscriptionState.ERROR)
            subscription.transition(SubscriptionState.RECONNECTING)
        else:
            subscription.transition(SubscriptionState.ACTIVE)
        logger.debug(f"Subscribed to {subscription.channel_name}")
        return subscription

    def publish(self, change: ChangeEvent) -> int:
        """
        Schedule delivery of a change to every matching ACTIVE subscription.

        Must be called from a running event loop.

        Returns:
            Number of handlers scheduled
        """
        if self._log_events:
            self._event_log.append(change)

        loop = asyncio.get_running_loop()
        scheduled = 0
        for subscription in list(self._subscriptions.get(change.table, [])):
            if not subscription.is_active or not subscription.matches(change):
                continue
            task = loop.create_task(self._deliver(subscription, change))
            subscription._track(task)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            scheduled += 1

        if scheduled:
            logger.debug(f"Publishing {change} to {scheduled} subscriber(s)")
        return scheduled

    async def _deliver(self, subscription: FeedSubscription, change: ChangeEvent) -> None:
        if not subscription.is_active:
            return
        try:
            await subscription.handler(change)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Handler for {subscription.channel_name} raised on {change}: {e}")

    def interrupt(self, table: str) -> None:
        """Simulate a dropped realtime connection for a table."""
        self._interrupted.add(table)
        for subscription in self._subscriptions.get(table, []):
            if subscription.state == SubscriptionState.ACTIVE:
                subscription.transition(SubscriptionState.ERROR)
                subscription.transition(SubscriptionState.RECONNECTING)
        logger.warning(f"Realtime connection for '{table}' interrupted")

    def restore(self, table: str) -> None:
        """Re-establish the realtime connection for a table."""
        self._interrupted.discard(table)
        for subscription in self._subscriptions.get(table, []):
            if subscription.state == SubscriptionState.RECONNECTING:
                subscription.transition(SubscriptionState.ACTIVE)
        logger.info(f"Realtime connection for '{table}' restored")

    async def drain(self) -> None:
        """Wait until every scheduled handler has finished (useful for tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _remove(self, subscription: FeedSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.table, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    def get_event_log(self) -> list[ChangeEvent]:
        return self._event_log.copy()

    def clear_event_log(self) -> None:
        self._event_log.clear()
