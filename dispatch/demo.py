"""
Demonstration scripts for the notification engine.

These functions run the engine against the JSON fixtures in data/ with
in-memory transports, and print what each channel delivered.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

from dispatch.engine import NotificationEngine, build_engine
from shared.channels import RecordingPushTransport
from shared.config import Settings
from shared.data_store import PRODUCTS, RESERVATIONS, DataStore
from shared.logging_config import configure_logging
from shared.models import utcnow

DATA_DIR = Path(__file__).parent.parent / "data"


def _build_demo_engine() -> tuple[NotificationEngine, RecordingPushTransport]:
    settings = Settings(data_dir=DATA_DIR, banner_duration_seconds=0.5)
    transport = RecordingPushTransport()
    engine = build_engine(
        settings=settings,
        data_store=DataStore(data_dir=DATA_DIR),
        push_transport=transport,
    )
    return engine, transport


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70 + "\n")


def _print_history(engine: NotificationEngine, rows) -> None:
    print("\nHistory written:")
    for row in rows:
        print(f"  [{row.source_channel:8}] {row.user_id}: {row.title} - {row.message}")


async def new_product_demo() -> None:
    """
    A store adds a kitchen product; the realtime listener fans it out.

    The news goes out under the store's "kitchen" category. Ana and Diego
    never picked categories (they get everything), but Diego switched off
    every store-001 category, so he is filtered. Bruno and Carla follow other
    categories and are not candidates.
    """
    _banner("DEMO: New Product")
    engine, transport = _build_demo_engine()
    await engine.subscriptions.subscribe(
        "user-001", "https://push.example.com/ana", {"p256dh": "key-ana", "auth": "auth-ana"}
    )
    await engine.categories.sync_store_categories_to_notifications("store-001")
    await engine.set_all_enabled("user-004", False, store_id="store-001")
    await engine.start(store_id="store-001", sweep=False)

    print("ACTION: store-001 inserts 'Espresso Machine' in Kitchen\n")
    await engine.data_store.insert(PRODUCTS, {
        "id": "prod-100",
        "store_id": "store-001",
        "name": "Espresso Machine",
        "price": 499.0,
        "category_id": "sc-002",
    })
    await engine.data_store.feed.drain()

    print(f"\nSummary: {engine.listener.totals}")
    print(f"Push messages: {[str(m) for m in transport.sent_messages]}")
    _print_history(engine, await engine.history.get_user_notifications("user-001")
                   + await engine.history.get_user_notifications("user-004"))
    await engine.stop()


async def price_drop_demo() -> None:
    """
    A price drop goes to promotion followers; an opted-out user is filtered.

    Ana switches promotions off, so she counts as filtered. Her push endpoint
    would have been used otherwise.
    """
    _banner("DEMO: Price Drop")
    engine, transport = _build_demo_engine()
    await engine.set_enabled("user-001", "cat-promotions", False)
    await engine.subscriptions.subscribe(
        "user-002", "https://push.example.com/bruno", {"p256dh": "key-bruno", "auth": "auth-bruno"}
    )
    await engine.start(store_id="store-001", sweep=False)

    print("ACTION: Wireless Headphones $199.90 -> $149.90\n")
    await engine.data_store.update(PRODUCTS, "prod-001", {"price": 149.90})
    await engine.data_store.feed.drain()

    print(f"\nSummary: {engine.listener.totals}")
    for msg in transport.sent_messages:
        print(f"  {msg}")
    await engine.stop()


async def expired_endpoint_demo() -> None:
    """
    The push service answers 410; the chain falls back to the banner.
    """
    _banner("DEMO: Expired Push Endpoint")
    engine, transport = _build_demo_engine()
    endpoint = "https://push.example.com/stale"
    await engine.subscriptions.subscribe("user-004", endpoint, {"p256dh": "k", "auth": "a"})
    transport.expire(endpoint)

    summary = await engine.send_system_message(["user-004"], "Welcome back", "Your account is ready.")
    remaining = await engine.subscriptions.active_for_user("user-004")

    print(f"\nSummary: {summary}")
    print(f"Active subscriptions left: {len(remaining)}")
    _print_history(engine, await engine.history.get_user_notifications("user-004"))
    await engine.stop()


async def reservation_alert_demo() -> None:
    """
    Two sweeps race for the same reservation; the alert goes out once.
    """
    _banner("DEMO: Reservation Expiry Alert")
    engine, _ = _build_demo_engine()
    engine.data_store.seed(RESERVATIONS, [{
        "id": "res-001",
        "product_id": "prod-002",
        "client_id": "user-003",
        "store_id": "store-001",
        "status": "active",
        "expires_at": utcnow() + timedelta(minutes=10),
        "alert_sent": False,
    }])

    first, second = await asyncio.gather(
        engine.sweeper.sweep_once(),
        engine.sweeper.sweep_once(),
    )
    print(f"\nAlerts sent by sweep 1: {first}, sweep 2: {second}")
    _print_history(engine, await engine.history.get_user_notifications("user-003"))
    await engine.stop()


async def category_sync_demo() -> None:
    """Syncing twice creates store categories once."""
    _banner("DEMO: Category Sync")
    engine, _ = _build_demo_engine()
    first = await engine.categories.sync_store_categories_to_notifications("store-001")
    second = await engine.categories.sync_store_categories_to_notifications("store-001")
    print(f"First sync:  created={first.created} skipped={first.skipped}")
    print(f"Second sync: created={second.created} skipped={second.skipped}")
    categories = await engine.get_categories_for_user("client", "store-001")
    print(f"Categories for store-001 clients: {[c.name for c in categories]}")
    await engine.stop()


SCENARIOS = {
    "new-product": new_product_demo,
    "price-drop": price_drop_demo,
    "expired-endpoint": expired_endpoint_demo,
    "reservation-alert": reservation_alert_demo,
    "category-sync": category_sync_demo,
}


def run_demo(scenario: str) -> None:
    """Run one scenario by name, or all of them."""
    configure_logging("INFO")
    names = list(SCENARIOS) if scenario == "all" else [scenario]
    for name in names:
        asyncio.run(SCENARIOS[name]())
