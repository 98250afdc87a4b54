"""
Tests for delivery transports.

These tests verify that the recording transports track what they sent,
that web push maps push-service responses to results, and that banners
expire and dismiss cleanly.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from shared.channels import (
    BannerBoard,
    PermissionRegistry,
    PushResult,
    RecordingLocalNotifier,
    RecordingPushTransport,
    WebPushTransport,
)
from shared.errors import TransientDeliveryError
from shared.models import PermissionState, PushSubscriptionRecord


@pytest.fixture
def subscription(push_keys: dict) -> PushSubscriptionRecord:
    return PushSubscriptionRecord(user_id="user-001", endpoint="https://push.example.com/a", keys=push_keys)


class TestRecordingPushTransport:
    """Tests for the in-memory push transport."""

    async def test_send_success(self, push_transport: RecordingPushTransport, subscription):
        """Test successful push send."""
        result = await push_transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.DELIVERED
        assert push_transport.get_sent_count() == 1
        assert push_transport.find_message_to("user-001").payload["title"] == "Hello"

    async def test_expired_endpoint(self, push_transport: RecordingPushTransport, subscription):
        push_transport.expire(subscription.endpoint)

        result = await push_transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.EXPIRED
        assert push_transport.get_successful_sends() == []

    async def test_failing_endpoint(self, push_transport: RecordingPushTransport, subscription):
        push_transport.fail(subscription.endpoint)

        assert await push_transport.send(subscription, {"title": "x"}) == PushResult.FAILED

    async def test_simulated_failure_rate(self, subscription):
        """Test simulated push failure."""
        transport = RecordingPushTransport(fail_rate=1.0)

        assert await transport.send(subscription, {"title": "x"}) == PushResult.FAILED

    async def test_clear_history(self, push_transport: RecordingPushTransport, subscription):
        await push_transport.send(subscription, {"title": "x"})

        push_transport.clear_history()

        assert push_transport.get_sent_count() == 0


class TestWebPushTransport:
    """Tests for the pywebpush-backed transport."""

    @pytest.fixture
    def transport(self) -> WebPushTransport:
        return WebPushTransport(vapid_private_key="private-key", vapid_subject="mailto:ops@example.com")

    @staticmethod
    def _push_error(status_code: int) -> WebPushException:
        response = MagicMock()
        response.status_code = status_code
        return WebPushException("Push failed", response=response)

    async def test_delivered(self, transport: WebPushTransport, subscription):
        with patch("shared.channels.webpush") as webpush:
            result = await transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.DELIVERED
        kwargs = webpush.call_args.kwargs
        assert kwargs["subscription_info"]["endpoint"] == subscription.endpoint
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert '"title": "Hello"' in kwargs["data"]

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_gone_endpoint_is_expired(self, transport: WebPushTransport, subscription, status_code):
        """Test that 404/410 responses mean the subscription is gone."""
        with patch("shared.channels.webpush", side_effect=self._push_error(status_code)):
            result = await transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.EXPIRED

    async def test_other_error_is_failed(self, transport: WebPushTransport, subscription):
        with patch("shared.channels.webpush", side_effect=self._push_error(500)):
            result = await transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.FAILED

    async def test_connection_error_is_failed(self, transport: WebPushTransport, subscription):
        with patch("shared.channels.webpush", side_effect=ConnectionError("unreachable")):
            result = await transport.send(subscription, {"title": "Hello"})

        assert result == PushResult.FAILED


class TestPermissionRegistry:
    """Tests for local notification permission state."""

    def test_default_state(self, permissions: PermissionRegistry):
        assert permissions.get("user-001") == PermissionState.DEFAULT

    def test_report(self, permissions: PermissionRegistry):
        permissions.report("user-001", PermissionState.GRANTED)

        assert permissions.get("user-001") == PermissionState.GRANTED
        assert permissions.get("user-002") == PermissionState.DEFAULT


class TestRecordingLocalNotifier:
    """Tests for the in-memory platform notifier."""

    async def test_show(self, local_notifier: RecordingLocalNotifier):
        await local_notifier.show("user-001", "Title", "Body", {"url": "/"})

        assert local_notifier.get_sent_count() == 1
        assert local_notifier.shown[0].title == "Title"

    async def test_simulated_failure(self):
        notifier = RecordingLocalNotifier(fail_rate=1.0)

        with pytest.raises(TransientDeliveryError):
            await notifier.show("user-001", "Title", "Body", {})

        assert notifier.get_sent_count() == 0


class TestBannerBoard:
    """Tests for in-app banners and their timers."""

    async def test_show_schedules_expiry(self):
        board = BannerBoard(duration_seconds=0.01)

        banner = board.show("user-001", "Hello", "World", "promotions")

        assert board.active_for("user-001") == [banner]
        await asyncio.sleep(0.05)
        assert board.active_count == 0
        assert board.pending_timers == 0

    async def test_dismiss_cancels_timer(self, banners: BannerBoard):
        """Test that a manual dismiss removes the banner and its timer."""
        banner = banners.show("user-001", "Hello", "World", "promotions")

        assert banners.dismiss(banner.banner_id) is True
        assert banners.active_count == 0
        assert banners.pending_timers == 0

    async def test_no_double_removal(self):
        """Test that dismiss after expiry, and dismiss twice, are no-ops."""
        board = BannerBoard(duration_seconds=0.01)
        expired = board.show("user-001", "A", "a", "promotions")
        await asyncio.sleep(0.05)

        assert board.dismiss(expired.banner_id) is False

        dismissed = board.show("user-001", "B", "b", "promotions", duration_seconds=5)
        assert board.dismiss(dismissed.banner_id) is True
        assert board.dismiss(dismissed.banner_id) is False
        board.close()

    async def test_listener_receives_banner(self, banners: BannerBoard):
        seen = []
        banners.on_show(seen.append)

        banner = banners.show("user-001", "Hello", "World", "promotions")

        assert seen == [banner]
        assert banner.sound is True

    async def test_failing_listener_does_not_block_banner(self, banners: BannerBoard):
        def broken(banner):
            raise RuntimeError("ui gone")

        banners.on_show(broken)
        banners.show("user-001", "Hello", "World", "promotions")

        assert banners.active_count == 1

    async def test_close_cancels_everything(self):
        board = BannerBoard(duration_seconds=5)
        board.show("user-001", "A", "a", "promotions")
        board.show("user-002", "B", "b", "promotions")

        board.close()

        assert board.active_count == 0
        assert board.pending_timers == 0
