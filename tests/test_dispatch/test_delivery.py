"""
Tests for the delivery channel chain.

These tests verify channel ordering and fall-through, and that exactly one
history row is written per delivery whatever the channels did.
"""

import pytest

from dispatch.delivery import (
    DeliveryChannel,
    DeliveryChannelChain,
    InAppBannerChannel,
    push_payload,
)
from dispatch.history import NotificationHistory
from shared.data_store import NOTIFICATION_HISTORY, PUSH_SUBSCRIPTIONS
from shared.models import DeliveryEvent, PermissionState, SourceChannel


ENDPOINT = "https://updates.push.services.mozilla.com/wpush/v2/xyz"


@pytest.fixture
def event() -> DeliveryEvent:
    return DeliveryEvent(
        title="🔥 Flash Sale!",
        body="Headphones are now $149.90",
        category="promotions",
        target_url="/products/prod-001",
        payload={"product_id": "prod-001"},
    )


class TestChannelOrder:
    """Tests for which channel fires."""

    async def test_remote_push_first(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, banners, ana_user_id, push_keys, event
    ):
        """Test that an active subscription wins over every other channel."""
        await subscriptions.subscribe(ana_user_id, ENDPOINT, push_keys)

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.success is True
        assert outcome.channel_used == "remote"
        assert push_transport.get_sent_count() == 1
        assert banners.active_count == 0

    async def test_local_when_granted_and_no_subscription(
        self, chain: DeliveryChannelChain, permissions, local_notifier, ana_user_id, event
    ):
        permissions.report(ana_user_id, PermissionState.GRANTED)

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "local"
        assert local_notifier.shown[0].data["url"] == "/products/prod-001"

    async def test_banner_as_last_resort(self, chain: DeliveryChannelChain, banners, ana_user_id, event):
        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "in-app"
        assert banners.active_for(ana_user_id)[0].title == event.title

    async def test_permission_denied_is_skipped_not_failed(self, chain: DeliveryChannelChain, permissions, ana_user_id, event):
        permissions.report(ana_user_id, PermissionState.DENIED)

        outcome = await chain.deliver(ana_user_id, event)

        local = [a for a in outcome.attempts if a.channel == "local"][0]
        assert local.skipped is True
        assert outcome.channel_used == "in-app"

    async def test_subscription_bound_to_other_category_is_ignored(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, ana_user_id, push_keys, event
    ):
        await subscriptions.subscribe(ana_user_id, ENDPOINT, push_keys, category="stock")

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "in-app"
        assert push_transport.get_sent_count() == 0


class TestFallThrough:
    """Tests for failing channels."""

    async def test_expired_endpoint_falls_through_to_banner(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, data_store, ana_user_id, push_keys, event
    ):
        """Test that a 410 marks the subscription inactive and the banner fires."""
        await subscriptions.subscribe(ana_user_id, ENDPOINT, push_keys)
        push_transport.expire(ENDPOINT)

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "in-app"
        rows = await data_store.select(PUSH_SUBSCRIPTIONS, where={"endpoint": ENDPOINT})
        assert rows[0]["is_active"] is False
        history = await data_store.select(NOTIFICATION_HISTORY, where={"user_id": ana_user_id})
        assert [r["source_channel"] for r in history] == ["in-app"]

    async def test_expired_endpoint_falls_through_to_local(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, permissions, ana_user_id, push_keys, event
    ):
        await subscriptions.subscribe(ana_user_id, ENDPOINT, push_keys)
        push_transport.expire(ENDPOINT)
        permissions.report(ana_user_id, PermissionState.GRANTED)

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "local"
        assert outcome.record.source_channel == "local"

    async def test_one_live_endpoint_is_enough(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, ana_user_id, push_keys, event
    ):
        await subscriptions.subscribe(ana_user_id, ENDPOINT + "/old", push_keys)
        await subscriptions.subscribe(ana_user_id, ENDPOINT + "/new", push_keys)
        push_transport.expire(ENDPOINT + "/old")

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.channel_used == "remote"
        assert len(await subscriptions.active_for_user(ana_user_id)) == 1

    async def test_failed_channel_is_not_retried(
        self, chain: DeliveryChannelChain, subscriptions, push_transport, ana_user_id, push_keys, event
    ):
        await subscriptions.subscribe(ana_user_id, ENDPOINT, push_keys)
        push_transport.fail(ENDPOINT)

        outcome = await chain.deliver(ana_user_id, event)

        assert push_transport.get_sent_count() == 1
        assert outcome.channel_used == "in-app"
        assert outcome.attempts[0].error

    async def test_unexpected_error_does_not_skip_later_channels(self, history: NotificationHistory, banners, event):
        class Broken(DeliveryChannel):
            source = SourceChannel.REMOTE

            async def attempt(self, user_id, event):
                raise KeyError("bug")

        chain = DeliveryChannelChain([Broken(), InAppBannerChannel(banners)], history)

        outcome = await chain.deliver("user-001", event)

        assert outcome.channel_used == "in-app"


class TestHistoryRow:
    """Tests for the always-written history row."""

    async def test_exactly_one_row_per_delivery(self, chain: DeliveryChannelChain, data_store, ana_user_id, event):
        await chain.deliver(ana_user_id, event)

        rows = await data_store.select(NOTIFICATION_HISTORY, where={"user_id": ana_user_id})

        assert len(rows) == 1
        assert rows[0]["title"] == event.title
        assert rows[0]["message"] == event.body
        assert rows[0]["category"] == "promotions"

    async def test_nothing_fired_records_database(self, history: NotificationHistory, data_store, event):
        """Test that the row is written even when no channel fired."""
        chain = DeliveryChannelChain([], history)

        outcome = await chain.deliver("user-001", event)

        assert outcome.success is False
        assert outcome.channel_used == "database"
        assert data_store.row_count(NOTIFICATION_HISTORY) == 1

    async def test_persistence_failure_still_reports_delivery(
        self, chain: DeliveryChannelChain, data_store, banners, ana_user_id, event
    ):
        data_store.fail_table(NOTIFICATION_HISTORY)

        outcome = await chain.deliver(ana_user_id, event)

        assert outcome.success is True
        assert outcome.persisted is False
        assert banners.active_count == 1


def test_push_payload(event: DeliveryEvent):
    payload = push_payload(event)

    assert payload["url"] == "/products/prod-001"
    assert payload["data"] == {"product_id": "prod-001"}
