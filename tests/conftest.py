"""
Shared pytest fixtures for the notification engine tests.

These fixtures provide consistent test data and fresh, isolated component
instances for every test.
"""

from pathlib import Path

import pytest

from dispatch.audience import AudienceSources
from dispatch.cache import CacheContext
from dispatch.categories import CategoryResolver
from dispatch.delivery import (
    DeliveryChannelChain,
    InAppBannerChannel,
    LocalNotificationChannel,
    RemotePushChannel,
)
from dispatch.dispatcher import DispatchCoordinator
from dispatch.engine import build_engine
from dispatch.history import NotificationHistory
from dispatch.locks import ConcurrencyGuard, NativeLockStrategy
from dispatch.preferences import PreferenceStore
from dispatch.subscriptions import SubscriptionRegistry
from shared.channels import (
    BannerBoard,
    PermissionRegistry,
    RecordingLocalNotifier,
    RecordingPushTransport,
)
from shared.config import Settings
from shared.data_store import DataStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def data_dir() -> Path:
    """Path to the fixture data directory."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def data_store(data_dir: Path) -> DataStore:
    """
    Fresh DataStore instance for each test.

    Uses the real JSON fixtures but creates a new instance
    so tests don't interfere with each other.
    """
    return DataStore(data_dir=data_dir)


@pytest.fixture
def empty_store() -> DataStore:
    """DataStore with no fixtures loaded."""
    return DataStore()


@pytest.fixture
def settings(data_dir: Path) -> Settings:
    return Settings(data_dir=data_dir, banner_duration_seconds=5.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CacheContext:
    return CacheContext(default_ttl=300.0, clock=clock)


@pytest.fixture
def guard() -> ConcurrencyGuard:
    return ConcurrencyGuard(NativeLockStrategy())


@pytest.fixture
def categories(data_store: DataStore, cache: CacheContext, guard: ConcurrencyGuard) -> CategoryResolver:
    return CategoryResolver(data_store, cache, guard)


@pytest.fixture
def preferences(data_store: DataStore, guard: ConcurrencyGuard, categories: CategoryResolver) -> PreferenceStore:
    return PreferenceStore(data_store, guard, categories)


@pytest.fixture
def subscriptions(data_store: DataStore, guard: ConcurrencyGuard) -> SubscriptionRegistry:
    return SubscriptionRegistry(data_store, guard)


@pytest.fixture
def history(data_store: DataStore, guard: ConcurrencyGuard) -> NotificationHistory:
    return NotificationHistory(data_store, guard)


# =============================================================================
# Delivery Fixtures
# =============================================================================

@pytest.fixture
def push_transport() -> RecordingPushTransport:
    """Fresh push transport for each test."""
    return RecordingPushTransport(fail_rate=0.0)


@pytest.fixture
def local_notifier() -> RecordingLocalNotifier:
    return RecordingLocalNotifier(fail_rate=0.0)


@pytest.fixture
def permissions() -> PermissionRegistry:
    return PermissionRegistry()


@pytest.fixture
async def banners():
    """Banner board whose timers are cancelled after the test."""
    board = BannerBoard(duration_seconds=5.0)
    yield board
    board.close()


@pytest.fixture
def chain(
    subscriptions: SubscriptionRegistry,
    push_transport: RecordingPushTransport,
    permissions: PermissionRegistry,
    local_notifier: RecordingLocalNotifier,
    banners: BannerBoard,
    history: NotificationHistory,
) -> DeliveryChannelChain:
    return DeliveryChannelChain(
        [
            RemotePushChannel(subscriptions, push_transport),
            LocalNotificationChannel(permissions, local_notifier),
            InAppBannerChannel(banners),
        ],
        history,
    )


@pytest.fixture
def coordinator(
    data_store: DataStore,
    categories: CategoryResolver,
    preferences: PreferenceStore,
    chain: DeliveryChannelChain,
    guard: ConcurrencyGuard,
    cache: CacheContext,
    subscriptions: SubscriptionRegistry,
) -> DispatchCoordinator:
    return DispatchCoordinator(
        data_store,
        categories,
        preferences,
        chain,
        guard,
        cache,
        AudienceSources(data_store=data_store, subscriptions=subscriptions),
    )


@pytest.fixture
async def engine(settings: Settings, data_store: DataStore, push_transport: RecordingPushTransport):
    """Fully wired engine over the fixture data. Stopped after the test."""
    engine = build_engine(settings=settings, data_store=data_store, push_transport=push_transport)
    yield engine
    await engine.stop()


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def ana_user_id() -> str:
    """Ana: client with no preferred-category list (interested in everything)."""
    return "user-001"


@pytest.fixture
def bruno_user_id() -> str:
    """Bruno: client whose list only contains promotions."""
    return "user-002"


@pytest.fixture
def carla_user_id() -> str:
    """Carla: client following new-products and reservations."""
    return "user-003"


@pytest.fixture
def diego_user_id() -> str:
    """Diego: client with an empty list (never chose)."""
    return "user-004"


# =============================================================================
# Catalog Fixtures
# =============================================================================

@pytest.fixture
def store_id() -> str:
    """Store with three store categories (one inactive) and two products."""
    return "store-001"


@pytest.fixture
def headphones_product_id() -> str:
    """Wireless Headphones, $199.90, category sc-001 (Electronics)."""
    return "prod-001"


@pytest.fixture
def promotions_category_id() -> str:
    return "cat-promotions"


@pytest.fixture
def new_products_category_id() -> str:
    return "cat-new-products"


PUSH_KEYS = {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM", "auth": "tBHItJI5svbpez7KI4CCXg"}


@pytest.fixture
def push_keys() -> dict:
    return dict(PUSH_KEYS)
