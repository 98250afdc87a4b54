"""
Delivery transports used by the delivery channel chain.

Three mechanisms can put a notification in front of a user:
- Remote push: a web push message to a subscribed browser endpoint
- Local notification: a platform notification, only with granted permission
- In-app banner: a transient banner that expires on its own

Design decisions:
- Transports are swappable behind small interfaces; the Recording* variants
  track what they sent for test assertions and can simulate failures
- WebPushTransport wraps pywebpush, whose API is blocking, in a worker thread
- Permission is only ever read here; requesting it is a UI action
- Banner timers are cancelable and removal is idempotent
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from pywebpush import WebPushException, webpush

from shared.errors import TransientDeliveryError
from shared.models import PermissionState, PushSubscriptionRecord, utcnow

logger = logging.getLogger("channels")


# =============================================================================
# Remote Push
# =============================================================================

class PushResult(str, Enum):
    """Outcome reported by a push transport."""
    DELIVERED = "delivered"
    EXPIRED = "expired"       # Endpoint gone (404/410), subscription must be invalidated
    FAILED = "failed"         # Anything else


@dataclass
class SentPush:
    """Record of one push send attempt, kept by RecordingPushTransport."""
    user_id: str
    endpoint: str
    payload: dict[str, Any]
    result: PushResult
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.result == PushResult.DELIVERED

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} PUSH to {self.user_id}: {self.payload.get('title')} ({self.result.value})"


class PushTransport(ABC):
    """Sends one payload to one push subscription."""

    @abstractmethod
    async def send(
        self,
        subscription: PushSubscriptionRecord,
        payload: dict[str, Any],
    ) -> PushResult:
        """Deliver `payload` to the subscription's endpoint."""


class WebPushTransport(PushTransport):
    """
    Web push delivery through pywebpush with VAPID authentication.

    404 and 410 responses mean the browser dropped the subscription and are
    reported as EXPIRED. Every other failure is FAILED.
    """

    def __init__(self, vapid_private_key: str, vapid_subject: str, ttl: int = 86400):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = {"sub": vapid_subject}
        self.ttl = ttl

    async def send(
        self,
        subscription: PushSubscriptionRecord,
        payload: dict[str, Any],
    ) -> PushResult:
        return await asyncio.to_thread(self._send_blocking, subscription, json.dumps(payload))

    def _send_blocking(self, subscription: PushSubscriptionRecord, payload_json: str) -> PushResult:
        endpoint_short = subscription.endpoint[:60]
        try:
            webpush(
                subscription_info=subscription.subscription_info(),
                data=payload_json,
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                ttl=self.ttl,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code in (404, 410):
                logger.info(f"[PUSH EXPIRED] {endpoint_short} returned {status_code}")
                return PushResult.EXPIRED
            logger.warning(f"[PUSH FAILED] {endpoint_short}: {e}")
            return PushResult.FAILED
        except OSError as e:
            # requests' connection errors derive from OSError
            logger.warning(f"[PUSH FAILED] {endpoint_short}: {e}")
            return PushResult.FAILED

        logger.info(f"[PUSH] To: {subscription.user_id} | {endpoint_short}")
        return PushResult.DELIVERED


class RecordingPushTransport(PushTransport):
    """
    In-memory push transport.

    Logs sends and tracks them for test assertions. Endpoints can be marked as
    expired or failing, and a random failure rate can be simulated.
    """

    def __init__(self, fail_rate: float = 0.0):
        """
        Args:
            fail_rate: Probability of a FAILED result (0.0 to 1.0), for testing.
        """
        self.fail_rate = fail_rate
        self.sent_messages: list[SentPush] = []
        self._expired: set[str] = set()
        self._failing: set[str] = set()

    def expire(self, endpoint: str) -> None:
        """Make an endpoint answer as gone (410)."""
        self._expired.add(endpoint)

    def fail(self, endpoint: str) -> None:
        """Make an endpoint fail with a non-expiry error."""
        self._failing.add(endpoint)

    async def send(
        self,
        subscription: PushSubscriptionRecord,
        payload: dict[str, Any],
    ) -> PushResult:
        await asyncio.sleep(0)
        if subscription.endpoint in self._expired:
            result = PushResult.EXPIRED
            logger.info(f"[PUSH EXPIRED] To: {subscription.user_id} | {subscription.endpoint}")
        elif subscription.endpoint in self._failing or random.random() < self.fail_rate:
            result = PushResult.FAILED
            logger.error(f"[PUSH FAILED] To: {subscription.user_id} | {subscription.endpoint}")
        else:
            result = PushResult.DELIVERED
            logger.info(f"[PUSH] To: {subscription.user_id} | Title: {payload.get('title')}")

        self.sent_messages.append(SentPush(
            user_id=subscription.user_id,
            endpoint=subscription.endpoint,
            payload=payload,
            result=result,
        ))
        return result

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[SentPush]:
        return [m for m in self.sent_messages if m.success]

    def find_message_to(self, user_id: str) -> Optional[SentPush]:
        for msg in self.sent_messages:
            if msg.user_id == user_id:
                return msg
        return None

    def clear_history(self) -> None:
        self.sent_messages.clear()


# =============================================================================
# Local Platform Notification
# =============================================================================

class PermissionRegistry:
    """
    Current local-notification permission per user.

    The UI reports permission changes here; the engine only reads.
    """

    def __init__(self, default: PermissionState = PermissionState.DEFAULT):
        self.default = default
        self._states: dict[str, PermissionState] = {}

    def get(self, user_id: str) -> PermissionState:
        return self._states.get(user_id, self.default)

    def report(self, user_id: str, state: PermissionState) -> None:
        self._states[user_id] = PermissionState(state)


@dataclass
class ShownNotification:
    user_id: str
    title: str
    body: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


class LocalNotifier(ABC):
    """Shows a platform notification to a user."""

    @abstractmethod
    async def show(self, user_id: str, title: str, body: str, data: dict[str, Any]) -> None:
        """Show the notification or raise TransientDeliveryError."""


class RecordingLocalNotifier(LocalNotifier):
    """In-memory platform notifier that tracks what it showed."""

    def __init__(self, fail_rate: float = 0.0):
        self.fail_rate = fail_rate
        self.shown: list[ShownNotification] = []

    async def show(self, user_id: str, title: str, body: str, data: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if random.random() < self.fail_rate:
            logger.error(f"[LOCAL FAILED] To: {user_id} | {title}")
            raise TransientDeliveryError("Simulated local notification failure", channel="local")
        logger.info(f"[LOCAL] To: {user_id} | {title}")
        self.shown.append(ShownNotification(user_id=user_id, title=title, body=body, data=data))

    def get_sent_count(self) -> int:
        return len(self.shown)

    def clear_history(self) -> None:
        self.shown.clear()


# =============================================================================
# In-App Banner
# =============================================================================

@dataclass
class Banner:
    """A transient in-app banner."""
    user_id: str
    title: str
    body: str
    category: str
    target_url: Optional[str] = None
    sound: bool = True
    banner_id: str = field(default_factory=lambda: str(uuid4()))
    shown_at: datetime = field(default_factory=utcnow)


BannerListener = Callable[[Banner], None]


class BannerBoard:
    """
    Active in-app banners with wall-clock auto-dismiss.

    Each banner gets a timer on the running loop. A manual dismiss cancels the
    timer; whichever of timer and dismiss comes first removes the banner, the
    other is a no-op.
    """

    def __init__(self, duration_seconds: float = 5.0, sound_enabled: bool = True):
        self.duration_seconds = duration_seconds
        self.sound_enabled = sound_enabled
        self.shown: list[Banner] = []
        self._active: dict[str, Banner] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[BannerListener] = []

    def on_show(self, listener: BannerListener) -> None:
        """Register a UI hook called for every banner shown."""
        self._listeners.append(listener)

    def show(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str,
        target_url: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> Banner:
        """Show a banner and schedule its expiry. Requires a running loop."""
        loop = asyncio.get_running_loop()
        banner = Banner(
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            target_url=target_url,
            sound=self.sound_enabled,
        )
        self._active[banner.banner_id] = banner
        self.shown.append(banner)
        duration = duration_seconds if duration_seconds is not None else self.duration_seconds
        self._timers[banner.banner_id] = loop.call_later(duration, self._expire, banner.banner_id)

        for listener in self._listeners:
            try:
                listener(banner)
            except Exception as e:
                logger.error(f"Banner listener failed: {e}")

        logger.info(f"[BANNER] To: {user_id} | {title}")
        return banner

    def dismiss(self, banner_id: str) -> bool:
        """
        Dismiss a banner before it expires.

        Returns:
            True if the banner was showing, False if already gone
        """
        timer = self._timers.pop(banner_id, None)
        if timer is not None:
            timer.cancel()
        return self._active.pop(banner_id, None) is not None

    def _expire(self, banner_id: str) -> None:
        self._timers.pop(banner_id, None)
        if self._active.pop(banner_id, None) is not None:
            logger.debug(f"Banner {banner_id} expired")

    def active_for(self, user_id: str) -> list[Banner]:
        return [b for b in self._active.values() if b.user_id == user_id]

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def close(self) -> None:
        """Cancel every pending timer and clear active banners."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._active.clear()
