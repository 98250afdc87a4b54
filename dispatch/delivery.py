"""
Delivery channel chain.

Delivers one event to one user through an ordered list of channels:

1. Remote push: only with an active subscription. An expired endpoint marks
   the subscription inactive and the chain falls through.
2. Local notification: only when the user already granted permission.
3. In-app banner: always available, expires on its own.
4. History: one NotificationRecord is persisted no matter what happened above,
   with source_channel set to the channel that fired (or "database").

The first channel that fires wins. Each step is isolated, so an exception in
any channel can neither skip a later channel nor the history write. A channel
that failed is not retried for the same delivery.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from dispatch.history import NotificationHistory
from dispatch.subscriptions import SubscriptionRegistry
from shared.channels import (
    BannerBoard,
    LocalNotifier,
    PermissionRegistry,
    PushResult,
    PushTransport,
)
from shared.errors import (
    EndpointExpiredError,
    NotificationPermissionError,
    TransientDeliveryError,
)
from shared.models import (
    ChannelAttempt,
    DeliveryEvent,
    DeliveryOutcome,
    NotificationRecord,
    PermissionState,
    SourceChannel,
)

logger = logging.getLogger("delivery_chain")


def push_payload(event: DeliveryEvent) -> dict[str, Any]:
    """JSON payload sent to the service worker."""
    return {
        "title": event.title,
        "body": event.body,
        "category": event.category,
        "url": event.target_url or "/",
        "data": event.payload,
    }


# =============================================================================
# Channels
# =============================================================================

class DeliveryChannel(ABC):
    """One step of the chain."""

    source: SourceChannel

    @abstractmethod
    async def attempt(self, user_id: str, event: DeliveryEvent) -> bool:
        """
        Try to deliver.

        Returns:
            True if the channel fired, False if it does not apply to this user

        Raises:
            TransientDeliveryError: The channel was tried and failed
            NotificationPermissionError: Local notifications are not allowed
        """


class RemotePushChannel(DeliveryChannel):
    """Web push to every active subscription of the user."""

    source = SourceChannel.REMOTE

    def __init__(self, subscriptions: SubscriptionRegistry, transport: PushTransport):
        self.subscriptions = subscriptions
        self.transport = transport

    async def attempt(self, user_id: str, event: DeliveryEvent) -> bool:
        targets = await self.subscriptions.active_for_user(user_id, event.category)
        if not targets:
            return False

        payload = push_payload(event)
        delivered = False
        errors: list[TransientDeliveryError] = []
        for subscription in targets:
            result = await self.transport.send(subscription, payload)
            if result == PushResult.DELIVERED:
                delivered = True
            elif result == PushResult.EXPIRED:
                await self.subscriptions.mark_expired(subscription.endpoint)
                errors.append(EndpointExpiredError(subscription.endpoint))
            else:
                errors.append(TransientDeliveryError(
                    f"Push to {subscription.endpoint[:60]} failed", channel=self.source.value
                ))

        if delivered:
            return True
        raise errors[0]


class LocalNotificationChannel(DeliveryChannel):
    """Platform notification. Permission is read, never requested."""

    source = SourceChannel.LOCAL

    def __init__(self, permissions: PermissionRegistry, notifier: LocalNotifier):
        self.permissions = permissions
        self.notifier = notifier

    async def attempt(self, user_id: str, event: DeliveryEvent) -> bool:
        state = self.permissions.get(user_id)
        if state != PermissionState.GRANTED:
            raise NotificationPermissionError(f"Local notifications are '{state.value}' for {user_id}")
        await self.notifier.show(
            user_id,
            event.title,
            event.body,
            {"url": event.target_url, "category": event.category, **event.payload},
        )
        return True


class InAppBannerChannel(DeliveryChannel):
    source = SourceChannel.IN_APP

    def __init__(self, board: BannerBoard):
        self.board = board

    async def attempt(self, user_id: str, event: DeliveryEvent) -> bool:
        self.board.show(user_id, event.title, event.body, event.category, event.target_url)
        return True


# =============================================================================
# Chain
# =============================================================================

class DeliveryChannelChain:
    """
    Runs the channels in order and always writes the history row.

    Example usage:
        chain = DeliveryChannelChain(
            [RemotePushChannel(registry, transport),
             LocalNotificationChannel(permissions, notifier),
             InAppBannerChannel(board)],
            history,
        )
        outcome = await chain.deliver("u1", event)
    """

    def __init__(self, channels: list[DeliveryChannel], history: NotificationHistory):
        self.channels = channels
        self.history = history

    async def deliver(self, user_id: str, event: DeliveryEvent) -> DeliveryOutcome:
        attempts: list[ChannelAttempt] = []
        channel_used: Optional[SourceChannel] = None

        for channel in self.channels:
            try:
                fired = await channel.attempt(user_id, event)
            except NotificationPermissionError as e:
                # Expected: the user has not granted permission
                logger.debug(f"Skipping {channel.source.value} for {user_id}: {e}")
                attempts.append(ChannelAttempt(channel=channel.source, success=False, skipped=True, error=str(e)))
                continue
            except TransientDeliveryError as e:
                logger.warning(f"{channel.source.value} delivery to {user_id} failed, falling through: {e}")
                attempts.append(ChannelAttempt(channel=channel.source, success=False, error=str(e)))
                continue
            except Exception as e:
                logger.error(f"Unexpected {channel.source.value} error for {user_id}: {e}")
                attempts.append(ChannelAttempt(channel=channel.source, success=False, error=str(e)))
                continue

            if not fired:
                attempts.append(ChannelAttempt(channel=channel.source, success=False, skipped=True))
                continue

            attempts.append(ChannelAttempt(channel=channel.source, success=True))
            channel_used = channel.source
            break

        record = NotificationRecord(
            user_id=user_id,
            title=event.title,
            message=event.body,
            category=event.category,
            source_channel=channel_used or SourceChannel.DATABASE,
        )
        persisted = True
        try:
            record = await self.history.record(record)
        except Exception as e:
            persisted = False
            logger.error(f"Failed to persist notification for {user_id}: {e}")

        logger.info(
            f"Delivered '{event.title}' to {user_id} via "
            f"{(channel_used or SourceChannel.DATABASE).value}"
        )
        return DeliveryOutcome(
            success=channel_used is not None,
            channel_used=channel_used or SourceChannel.DATABASE,
            record=record,
            persisted=persisted,
            attempts=attempts,
        )
