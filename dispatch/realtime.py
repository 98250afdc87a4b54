"""
Realtime trigger listener.

Subscribes to the backend change feed and turns each relevant change into
exactly one DispatchCoordinator call:

    products     INSERT                  -> new product, under its store category
    products     UPDATE (price lowered)  -> price drop
    promotions   INSERT                  -> promotion
    reservations INSERT                  -> reservation created message
    reservations UPDATE (status changed) -> reservation status message

Changes that cannot be translated (a missing related row, a malformed payload)
are logged and dropped; nothing escapes the listener. A new product is routed
under the notification category synced from its store category, created on
demand when the store has not been synced yet. stop() releases every
subscription it created, and no dispatch is issued after it returns.
"""

import logging
from functools import partial
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from dispatch.audience import ExplicitAudience, PreferredCategoryAudience
from dispatch.categories import normalize_name
from dispatch.dispatcher import DispatchCoordinator, DispatchRequest
from shared.change_feed import ChangeEvent, ChangeFeed, ChangeType, FeedSubscription
from shared.data_store import PRODUCTS, PROMOTIONS, RESERVATIONS, STORE_CATEGORIES, DataStore
from shared.errors import DataIntegrityError
from shared.models import DispatchSummary, Product, Promotion, Reservation, ReservationStatus
from shared.templates import (
    CATEGORY_NEW_PRODUCTS,
    CATEGORY_PROMOTIONS,
    new_product_event,
    price_drop_event,
    promotion_event,
    reservation_created_event,
    reservation_status_event,
)

logger = logging.getLogger("realtime_listener")

Translator = Callable[[ChangeEvent], Awaitable[Optional[DispatchRequest]]]


class RealtimeTriggerListener:
    """
    Change feed -> dispatch bridge.

    Example usage:
        listener = RealtimeTriggerListener(store.feed, store, coordinator, store_id="s1")
        listener.start()
        ...
        listener.stop()
    """

    def __init__(
        self,
        feed: ChangeFeed,
        data_store: DataStore,
        coordinator: DispatchCoordinator,
        store_id: Optional[str] = None,
    ):
        """
        Args:
            feed: Change feed to subscribe to
            data_store: Used to look up rows related to a change
            coordinator: Receives one call per translated change
            store_id: Only listen to catalog changes of this store
        """
        self.feed = feed
        self.data_store = data_store
        self.coordinator = coordinator
        self.categories = coordinator.categories
        self.store_id = store_id

        self.subscriptions: list[FeedSubscription] = []
        self.totals = DispatchSummary()
        self.dispatched = 0
        self.dropped = 0
        self._stopped = True

    @property
    def is_running(self) -> bool:
        return not self._stopped

    def start(self) -> None:
        """Subscribe to every binding."""
        if not self._stopped:
            logger.warning("RealtimeTriggerListener already started")
            return

        self._stopped = False
        row_filter = {"store_id": self.store_id} if self.store_id else None
        self._listen(PRODUCTS, ChangeType.INSERT, self._on_product_inserted, row_filter)
        self._listen(PRODUCTS, ChangeType.UPDATE, self._on_product_updated, row_filter)
        self._listen(PROMOTIONS, ChangeType.INSERT, self._on_promotion_inserted, row_filter)
        self._listen(RESERVATIONS, ChangeType.INSERT, self._on_reservation_inserted, row_filter)
        self._listen(RESERVATIONS, ChangeType.UPDATE, self._on_reservation_updated, row_filter)
        logger.info(f"Realtime listener started ({len(self.subscriptions)} channels)")

    def stop(self) -> None:
        """Release every subscription and cancel handlers still running."""
        if self._stopped:
            return
        self._stopped = True
        for subscription in self.subscriptions:
            subscription.unsubscribe()
        self.subscriptions.clear()
        logger.info("Realtime listener stopped")

    def _listen(
        self,
        table: str,
        change_type: ChangeType,
        translate: Translator,
        row_filter: Optional[dict] = None,
    ) -> None:
        subscription = self.feed.listen(
            table, change_type, partial(self._handle, translate), row_filter=row_filter
        )
        self.subscriptions.append(subscription)

    async def _handle(self, translate: Translator, change: ChangeEvent) -> None:
        if self._stopped:
            return

        try:
            request = await translate(change)
        except (DataIntegrityError, ValidationError) as e:
            self.dropped += 1
            logger.warning(f"Dropping {change}: {e}")
            return
        except Exception as e:
            self.dropped += 1
            logger.error(f"Could not translate {change}: {e}")
            return

        # Teardown may have happened while translating
        if request is None or self._stopped:
            return

        try:
            summary = await self.coordinator.dispatch_to_audience(
                request.event, request.selector, request.store_id, request.interests
            )
        except Exception as e:
            logger.error(f"Dispatch for {change} failed: {e}")
            return

        self.dispatched += 1
        self.totals = self.totals.merge(summary)

    # =========================================================================
    # Translators
    # =========================================================================

    async def _require_store_category(self, product: Product) -> Optional[str]:
        """Normalized name of the product's store category, None if it has none."""
        if product.category_id is None:
            return None
        row = await self.data_store.get(STORE_CATEGORIES, product.category_id)
        if row is None:
            raise DataIntegrityError(
                f"Product {product.id} references missing category {product.category_id}"
            )
        return normalize_name(row["name"])

    async def _on_product_inserted(self, change: ChangeEvent) -> Optional[DispatchRequest]:
        product = Product.model_validate(change.new)
        category = await self._require_store_category(product)
        if category is None:
            category = CATEGORY_NEW_PRODUCTS
        elif await self.categories.resolve(category, product.store_id) is None:
            logger.info(f"No notification category '{category}' for store {product.store_id}, syncing")
            await self.categories.sync_store_categories_to_notifications(product.store_id)
        return DispatchRequest(
            event=new_product_event(product, category=category),
            selector=PreferredCategoryAudience(category),
            store_id=product.store_id,
        )

    async def _on_product_updated(self, change: ChangeEvent) -> Optional[DispatchRequest]:
        old_price = (change.old or {}).get("price")
        new_price = change.new.get("price")
        if old_price is None or new_price is None or new_price >= old_price:
            return None

        product = Product.model_validate(change.new)
        await self._require_store_category(product)
        logger.info(f"Price drop on {product.name}: ${old_price} -> ${new_price}")
        return DispatchRequest(
            event=price_drop_event(product, old_price),
            selector=PreferredCategoryAudience(CATEGORY_PROMOTIONS),
            store_id=product.store_id,
        )

    async def _on_promotion_inserted(self, change: ChangeEvent) -> Optional[DispatchRequest]:
        promotion = Promotion.model_validate(change.new)
        product = await self.data_store.get_product(promotion.product_id)
        if product is None:
            raise DataIntegrityError(
                f"Promotion {promotion.id} references missing product {promotion.product_id}"
            )
        return DispatchRequest(
            event=promotion_event(promotion, product),
            selector=PreferredCategoryAudience(CATEGORY_PROMOTIONS),
            store_id=promotion.store_id or product.store_id,
        )

    async def _on_reservation_inserted(self, change: ChangeEvent) -> Optional[DispatchRequest]:
        reservation = Reservation.model_validate(change.new)
        if reservation.status != ReservationStatus.ACTIVE.value:
            return None
        product = await self.data_store.get_product(reservation.product_id)
        if product is None:
            raise DataIntegrityError(
                f"Reservation {reservation.id} references missing product {reservation.product_id}"
            )
        return DispatchRequest(
            event=reservation_created_event(reservation, product.name),
            selector=ExplicitAudience([reservation.client_id]),
            store_id=reservation.store_id,
            interests=False,
        )

    async def _on_reservation_updated(self, change: ChangeEvent) -> Optional[DispatchRequest]:
        if (change.old or {}).get("status") == change.new.get("status"):
            return None
        reservation = Reservation.model_validate(change.new)
        event = reservation_status_event(reservation.id, reservation.status)
        if event is None:
            return None
        return DispatchRequest(
            event=event,
            selector=ExplicitAudience([reservation.client_id]),
            store_id=reservation.store_id,
            interests=False,
        )
