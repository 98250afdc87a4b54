"""
Dispatch coordinator.

Given an event and an audience, decides who gets it and drives the delivery
chain per recipient:

1. Resolve the event's category to a real category row. If it does not
   resolve, nothing is sent (fail closed).
2. Resolve the audience. Only a total failure here propagates, as
   AudienceResolutionError.
3. Filter candidates through the preference store. Opted-out users are
   counted as filtered, not as errors. Messages addressed to their owner
   (reservations, system messages) skip the profile interest list.
4. Deliver to the rest one at a time and aggregate the counts. A failure for
   one recipient never aborts the others.

Identical concurrent dispatches (same event fingerprint and audience) share
one in-flight execution through CacheContext.dedupe().

Also home to the reservation and system-message flows, which build an event
and run it through dispatch_to_audience().
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from dispatch.audience import AudienceSelector, AudienceSources, ExplicitAudience, unique_in_order
from dispatch.cache import CacheContext
from dispatch.categories import CategoryResolver
from dispatch.delivery import DeliveryChannelChain
from dispatch.locks import ConcurrencyGuard
from dispatch.preferences import PreferenceStore
from shared.data_store import RESERVATIONS, DataStore
from shared.errors import AudienceResolutionError, BackendError, DataIntegrityError
from shared.models import DeliveryEvent, DispatchSummary, ReservationStatus
from shared.templates import (
    CATEGORY_SYSTEM,
    reservation_expiring_event,
    reservation_status_event,
    system_message_event,
)

logger = logging.getLogger("dispatch_coordinator")


@dataclass
class DispatchRequest:
    """One queued dispatch, used by process_batch()."""
    event: DeliveryEvent
    selector: AudienceSelector
    store_id: Optional[str] = None
    interests: bool = True


class DispatchCoordinator:
    """
    Fans events out to interested users.

    Example usage:
        summary = await coordinator.dispatch_to_audience(
            price_drop_event(product, old_price=20.0),
            PreferredCategoryAudience("promotions"),
            store_id=product.store_id,
        )
        print(summary.sent, summary.filtered, summary.total_candidates)
    """

    def __init__(
        self,
        data_store: DataStore,
        categories: CategoryResolver,
        preferences: PreferenceStore,
        chain: DeliveryChannelChain,
        guard: ConcurrencyGuard,
        cache: CacheContext,
        sources: AudienceSources,
        urgent_minutes: int = 30,
    ):
        self.data_store = data_store
        self.categories = categories
        self.preferences = preferences
        self.chain = chain
        self.guard = guard
        self.cache = cache
        self.sources = sources
        self.urgent_minutes = urgent_minutes

    # =========================================================================
    # Audience Dispatch
    # =========================================================================

    async def dispatch_to_audience(
        self,
        event: DeliveryEvent,
        selector: AudienceSelector,
        store_id: Optional[str] = None,
        interests: bool = True,
    ) -> DispatchSummary:
        """
        Deliver an event to every interested member of an audience.

        Args:
            event: What to send
            selector: Who to consider
            store_id: Store scope used to resolve the event category
            interests: Filter by profile interest lists as well as explicit toggles

        Raises:
            AudienceResolutionError: If the audience could not be resolved
        """
        key = f"dispatch:{event.fingerprint()}:{selector.key}:{store_id or '*'}:{int(interests)}"
        return await self.cache.dedupe(
            key, lambda: self._dispatch(event, selector, store_id, interests)
        )

    async def _dispatch(
        self,
        event: DeliveryEvent,
        selector: AudienceSelector,
        store_id: Optional[str],
        interests: bool,
    ) -> DispatchSummary:
        try:
            category = await self.categories.require(event.category, store_id)
        except (DataIntegrityError, BackendError) as e:
            logger.warning(f"Dropping '{event.title}': category unresolved ({e})")
            return DispatchSummary()

        try:
            candidates = unique_in_order(await selector.resolve(self.sources))
        except Exception as e:
            logger.error(f"Audience '{selector.key}' could not be resolved: {e}")
            raise AudienceResolutionError(f"Could not resolve audience '{selector.key}': {e}") from e

        logger.info(f"Dispatching '{event.title}' [{category.name}] to {len(candidates)} candidate(s)")

        summary = DispatchSummary(total_candidates=len(candidates))
        routed = event.model_copy(update={"category": category.name})

        for user_id in candidates:
            try:
                allowed = await self.preferences.is_enabled(
                    user_id, category.id, category.name, interests=interests
                )
            except Exception as e:
                logger.error(f"Preference check failed for {user_id}: {e}")
                summary.failed += 1
                continue

            if not allowed:
                summary.filtered += 1
                continue

            try:
                outcome = await self.chain.deliver(user_id, routed)
            except Exception as e:
                logger.error(f"Delivery to {user_id} failed: {e}")
                summary.failed += 1
                continue

            if outcome.success:
                summary.sent += 1
            else:
                summary.failed += 1

        logger.info(
            f"Dispatch '{event.title}' done: sent={summary.sent} filtered={summary.filtered} "
            f"failed={summary.failed} candidates={summary.total_candidates}"
        )
        return summary

    # =========================================================================
    # Reservations
    # =========================================================================

    async def notify_reservation_expiring(
        self,
        reservation_id: str,
        now: Optional[datetime] = None,
    ) -> DispatchSummary:
        """
        Send the expiry reminder for a reservation at most once.

        The alert_sent check and write happen under the reservation's lock, so
        concurrent sweeps or triggers cannot both send.

        Raises:
            DataIntegrityError: If the reservation does not exist
            LockTimeoutError: If the reservation lock could not be acquired
        """
        async def check_and_send() -> DispatchSummary:
            reservation = await self.data_store.get_reservation(reservation_id)
            if reservation is None:
                raise DataIntegrityError(f"Reservation {reservation_id} not found")
            if reservation.alert_sent or reservation.status != ReservationStatus.ACTIVE.value:
                logger.debug(f"Reservation {reservation_id} needs no alert")
                return DispatchSummary()

            product = await self.data_store.get_product(reservation.product_id)
            event = reservation_expiring_event(
                reservation,
                product.name if product else "your item",
                reservation.minutes_remaining(now),
                urgent_threshold=self.urgent_minutes,
            )
            summary = await self.dispatch_to_audience(
                event,
                ExplicitAudience([reservation.client_id]),
                store_id=reservation.store_id,
                interests=False,
            )
            await self.data_store.update(RESERVATIONS, reservation_id, {"alert_sent": True})
            return summary

        return await self.guard.with_lock(f"reservation-alert:{reservation_id}", check_and_send)

    async def notify_reservation_status(
        self,
        reservation_id: str,
        status: Optional[ReservationStatus] = None,
    ) -> DispatchSummary:
        """
        Tell the reservation owner it was completed, cancelled or expired.

        Args:
            reservation_id: The reservation
            status: Status to announce (defaults to the reservation's current status)
        """
        reservation = await self.data_store.get_reservation(reservation_id)
        if reservation is None:
            raise DataIntegrityError(f"Reservation {reservation_id} not found")

        event = reservation_status_event(reservation.id, status or reservation.status)
        if event is None:
            return DispatchSummary()
        return await self.dispatch_to_audience(
            event,
            ExplicitAudience([reservation.client_id]),
            store_id=reservation.store_id,
            interests=False,
        )

    # =========================================================================
    # System Messages and Batches
    # =========================================================================

    async def send_system_message(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        category: str = CATEGORY_SYSTEM,
    ) -> DispatchSummary:
        event = system_message_event(title, body, category)
        return await self.dispatch_to_audience(event, ExplicitAudience(user_ids), interests=False)

    async def process_batch(self, requests: list[DispatchRequest]) -> DispatchSummary:
        """
        Run queued dispatches one after another.

        Only one batch runs at a time. A failing request is logged and the
        batch continues.
        """
        async def run() -> DispatchSummary:
            total = DispatchSummary()
            for request in requests:
                try:
                    summary = await self.dispatch_to_audience(
                        request.event, request.selector, request.store_id, request.interests
                    )
                except Exception as e:
                    logger.error(f"Batch item '{request.event.title}' failed: {e}")
                    continue
                total = total.merge(summary)
            logger.info(f"Batch of {len(requests)} processed: sent={total.sent}")
            return total

        return await self.guard.with_lock("batch-processing", run)
