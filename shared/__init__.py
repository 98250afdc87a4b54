"""
Shared infrastructure for the notification engine.

This package contains the pieces the dispatch components build on:
- Domain models (categories, preferences, history records, catalog rows)
- The in-memory backend data store and its realtime change feed
- Delivery transports (web push, local notification, in-app banner)
- Notification templates, settings, errors and logging setup
"""

from shared.models import (
    DeliveryEvent,
    NotificationCategory,
    NotificationRecord,
    PushSubscriptionRecord,
    UserPreference,
)
from shared.data_store import DataStore
from shared.change_feed import ChangeFeed, ChangeEvent, ChangeType

__all__ = [
    "DeliveryEvent",
    "NotificationCategory",
    "NotificationRecord",
    "PushSubscriptionRecord",
    "UserPreference",
    "DataStore",
    "ChangeFeed",
    "ChangeEvent",
    "ChangeType",
]
