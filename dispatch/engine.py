"""
Notification engine facade.

Wires the components together from Settings and exposes the operations the
surrounding application uses. build_engine() is the only place that knows how
the pieces fit, the way the API layer only ever talks to the facade.
"""

import logging
from typing import Iterable, Optional

from dispatch.audience import AudienceSelector, AudienceSources
from dispatch.cache import CacheContext
from dispatch.categories import CategoryResolver
from dispatch.delivery import (
    DeliveryChannelChain,
    InAppBannerChannel,
    LocalNotificationChannel,
    RemotePushChannel,
)
from dispatch.dispatcher import DispatchCoordinator
from dispatch.history import NotificationHistory
from dispatch.locks import ConcurrencyGuard, build_guard
from dispatch.preferences import PreferenceStore
from dispatch.realtime import RealtimeTriggerListener
from dispatch.reservations import ReservationExpirySweeper
from dispatch.subscriptions import SubscriptionRegistry
from shared.channels import (
    BannerBoard,
    LocalNotifier,
    PermissionRegistry,
    PushTransport,
    RecordingLocalNotifier,
    RecordingPushTransport,
    WebPushTransport,
)
from shared.config import Settings, get_settings
from shared.data_store import DataStore
from shared.models import (
    DeliveryEvent,
    DispatchSummary,
    NotificationCategory,
    NotificationRecord,
    NotificationStats,
    UserPreference,
)

logger = logging.getLogger("notification_engine")


class NotificationEngine:
    """
    Facade over the dispatch and preference components.

    Example usage:
        engine = build_engine()
        await engine.start()
        summary = await engine.dispatch_to_audience(event, AllClientsAudience())
        await engine.stop()
    """

    def __init__(
        self,
        settings: Settings,
        data_store: DataStore,
        cache: CacheContext,
        guard: ConcurrencyGuard,
        categories: CategoryResolver,
        preferences: PreferenceStore,
        subscriptions: SubscriptionRegistry,
        history: NotificationHistory,
        chain: DeliveryChannelChain,
        coordinator: DispatchCoordinator,
        permissions: PermissionRegistry,
        banners: BannerBoard,
        push_transport: PushTransport,
        local_notifier: LocalNotifier,
    ):
        self.settings = settings
        self.data_store = data_store
        self.cache = cache
        self.guard = guard
        self.categories = categories
        self.preferences = preferences
        self.subscriptions = subscriptions
        self.history = history
        self.chain = chain
        self.coordinator = coordinator
        self.permissions = permissions
        self.banners = banners
        self.push_transport = push_transport
        self.local_notifier = local_notifier

        self.listener: Optional[RealtimeTriggerListener] = None
        self.sweeper = ReservationExpirySweeper(
            data_store,
            coordinator,
            interval_seconds=settings.reservation_sweep_interval_seconds,
            warning_minutes=settings.reservation_warning_minutes,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, store_id: Optional[str] = None, sweep: bool = True) -> None:
        """Start the realtime listener and, optionally, the expiry sweep."""
        if self.listener is None:
            self.listener = RealtimeTriggerListener(
                self.data_store.feed, self.data_store, self.coordinator, store_id=store_id
            )
        self.listener.start()
        if sweep:
            self.sweeper.start()
        logger.info("Notification engine started")

    async def stop(self) -> None:
        """Release realtime subscriptions, stop the sweep and cancel banner timers."""
        if self.listener is not None:
            self.listener.stop()
        await self.sweeper.stop()
        self.banners.close()
        logger.info("Notification engine stopped")

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch_to_audience(
        self,
        event: DeliveryEvent,
        selector: AudienceSelector,
        store_id: Optional[str] = None,
        interests: bool = True,
    ) -> DispatchSummary:
        return await self.coordinator.dispatch_to_audience(event, selector, store_id, interests)

    async def send_system_message(self, user_ids: Iterable[str], title: str, body: str) -> DispatchSummary:
        return await self.coordinator.send_system_message(user_ids, title, body)

    # =========================================================================
    # Preferences
    # =========================================================================

    async def is_enabled(self, user_id: str, category_id: str) -> bool:
        category = await self.categories.resolve(category_id)
        return await self.preferences.is_enabled(
            user_id, category.id if category else category_id, category.name if category else None
        )

    async def set_enabled(self, user_id: str, category_id: str, enabled: bool) -> UserPreference:
        return await self.preferences.set_enabled(user_id, category_id, enabled)

    async def set_all_enabled(
        self,
        user_id: str,
        enabled: bool,
        store_id: Optional[str] = None,
    ) -> list[UserPreference]:
        return await self.preferences.set_all_enabled(user_id, enabled, store_id=store_id)

    async def get_categories_for_user(
        self,
        user_type: str,
        store_id: Optional[str] = None,
    ) -> list[NotificationCategory]:
        return await self.categories.get_categories_for_user(user_type, store_id)

    # =========================================================================
    # History
    # =========================================================================

    async def get_user_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[NotificationRecord]:
        return await self.history.get_user_notifications(user_id, unread_only=unread_only, limit=limit)

    async def mark_as_read(self, notification_id: str) -> Optional[NotificationRecord]:
        return await self.history.mark_as_read(notification_id)

    async def delete_notification(self, notification_id: str) -> bool:
        return await self.history.delete_notification(notification_id)

    async def get_stats(self, user_id: str) -> NotificationStats:
        return await self.history.get_stats(user_id)


def build_push_transport(settings: Settings) -> PushTransport:
    if settings.webpush_enabled:
        return WebPushTransport(
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
            ttl=settings.push_ttl_seconds,
        )
    logger.info("Web push disabled, recording push messages in memory")
    return RecordingPushTransport()


def build_engine(
    settings: Optional[Settings] = None,
    data_store: Optional[DataStore] = None,
    push_transport: Optional[PushTransport] = None,
    local_notifier: Optional[LocalNotifier] = None,
    permissions: Optional[PermissionRegistry] = None,
    cache: Optional[CacheContext] = None,
    guard: Optional[ConcurrencyGuard] = None,
) -> NotificationEngine:
    """
    Build a fully wired engine.

    Raises:
        ConfigurationError: If the settings are not usable
    """
    settings = settings or get_settings()
    settings.validate_for_startup()

    data_store = data_store or DataStore(data_dir=settings.data_dir)
    cache = cache or CacheContext(default_ttl=settings.category_cache_ttl_seconds)
    guard = guard or build_guard(
        native=settings.native_locks,
        max_retries=settings.lock_max_retries,
        base_delay=settings.lock_retry_base_delay,
        max_delay=settings.lock_retry_max_delay,
    )
    push_transport = push_transport or build_push_transport(settings)
    local_notifier = local_notifier or RecordingLocalNotifier()
    permissions = permissions or PermissionRegistry()
    banners = BannerBoard(duration_seconds=settings.banner_duration_seconds)

    categories = CategoryResolver(data_store, cache, guard, ttl=settings.category_cache_ttl_seconds)
    preferences = PreferenceStore(data_store, guard, categories)
    subscriptions = SubscriptionRegistry(data_store, guard)
    history = NotificationHistory(data_store, guard, retention_days=settings.history_retention_days)
    chain = DeliveryChannelChain(
        [
            RemotePushChannel(subscriptions, push_transport),
            LocalNotificationChannel(permissions, local_notifier),
            InAppBannerChannel(banners),
        ],
        history,
    )
    coordinator = DispatchCoordinator(
        data_store,
        categories,
        preferences,
        chain,
        guard,
        cache,
        AudienceSources(data_store=data_store, subscriptions=subscriptions),
        urgent_minutes=settings.reservation_urgent_minutes,
    )

    return NotificationEngine(
        settings=settings,
        data_store=data_store,
        cache=cache,
        guard=guard,
        categories=categories,
        preferences=preferences,
        subscriptions=subscriptions,
        history=history,
        chain=chain,
        coordinator=coordinator,
        permissions=permissions,
        banners=banners,
        push_transport=push_transport,
        local_notifier=local_notifier,
    )
