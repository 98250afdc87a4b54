"""
Notification message templates.

This module turns backend facts (a product, a promotion, a reservation) into
DeliveryEvents. Templates support variable substitution using Python's string
formatting.

Design decisions:
- Templates are stored as simple strings with {variable} placeholders
- Every template carries the notification category it is dispatched under
- Builders take catalog models, not raw rows, so a malformed change payload
  fails at validation before a template is rendered

In a production system, templates might be:
- Stored in a database for runtime editing
- Localized for different languages
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.models import DeliveryEvent, Product, Promotion, Reservation, ReservationStatus


# Built-in category names, also the default categories of the Category Resolver
CATEGORY_PROMOTIONS = "promotions"
CATEGORY_NEW_PRODUCTS = "new-products"
CATEGORY_RESERVATIONS = "reservations"
CATEGORY_STOCK = "stock"
CATEGORY_SYSTEM = "system"


class NotificationType(str, Enum):
    """
    Supported notification types.

    Each type corresponds to a business event that triggers a notification.
    """
    NEW_PRODUCT = "new_product"
    PRICE_DROP = "price_drop"
    PROMOTION = "promotion"

    RESERVATION_CREATED = "reservation_created"
    RESERVATION_EXPIRING = "reservation_expiring"
    RESERVATION_URGENT = "reservation_urgent"
    RESERVATION_COMPLETED = "reservation_completed"
    RESERVATION_CANCELLED = "reservation_cancelled"
    RESERVATION_EXPIRED = "reservation_expired"

    SYSTEM = "system"


@dataclass
class NotificationTemplate:
    """A title/body template for one notification type."""
    notification_type: NotificationType
    category: str
    title: str
    body: str
    target_url: Optional[str] = None

    def render(self, payload: Optional[dict] = None, **kwargs) -> DeliveryEvent:
        """Render the template into a DeliveryEvent."""
        return DeliveryEvent(
            title=self.title.format(**kwargs),
            body=self.body.format(**kwargs),
            category=self.category,
            target_url=self.target_url.format(**kwargs) if self.target_url else None,
            payload={"type": self.notification_type.value, **(payload or {})},
        )


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[NotificationType, NotificationTemplate] = {

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    NotificationType.NEW_PRODUCT: NotificationTemplate(
        notification_type=NotificationType.NEW_PRODUCT,
        category=CATEGORY_NEW_PRODUCTS,
        title="🆕 New Product!",
        body="📦 {product_name} just arrived in store!",
        target_url="/products/{product_id}",
    ),

    NotificationType.PRICE_DROP: NotificationTemplate(
        notification_type=NotificationType.PRICE_DROP,
        category=CATEGORY_PROMOTIONS,
        title="🔥 Flash Sale!",
        body="🎉 {product_name} is now ${new_price:.2f} (was ${old_price:.2f})",
        target_url="/products/{product_id}",
    ),

    NotificationType.PROMOTION: NotificationTemplate(
        notification_type=NotificationType.PROMOTION,
        category=CATEGORY_PROMOTIONS,
        title="🔥 {product_name} on Sale!",
        body="Now only ${promotional_price:.2f}. Don't miss it!",
        target_url="/products/{product_id}",
    ),

    # -------------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------------

    NotificationType.RESERVATION_CREATED: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_CREATED,
        category=CATEGORY_RESERVATIONS,
        title="📦 Reservation Created",
        body="{product_name} was reserved for you. Pick it up before {expires_at}.",
        target_url="/reservations/{reservation_id}",
    ),

    NotificationType.RESERVATION_EXPIRING: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_EXPIRING,
        category=CATEGORY_RESERVATIONS,
        title="⏰ Reservation Expiring",
        body="Your reservation for {product_name} expires in {minutes} minutes.",
        target_url="/reservations/{reservation_id}",
    ),

    NotificationType.RESERVATION_URGENT: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_URGENT,
        category=CATEGORY_RESERVATIONS,
        title="🚨 URGENT: Reservation Expiring",
        body="Only {minutes} minutes left to pick up {product_name}!",
        target_url="/reservations/{reservation_id}",
    ),

    NotificationType.RESERVATION_COMPLETED: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_COMPLETED,
        category=CATEGORY_RESERVATIONS,
        title="✅ Reservation Completed",
        body="Your reservation {short_id} was picked up. Thanks for shopping with us!",
        target_url="/reservations/{reservation_id}",
    ),

    NotificationType.RESERVATION_CANCELLED: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_CANCELLED,
        category=CATEGORY_RESERVATIONS,
        title="❌ Reservation Cancelled",
        body="Your reservation {short_id} was cancelled.",
        target_url="/reservations/{reservation_id}",
    ),

    NotificationType.RESERVATION_EXPIRED: NotificationTemplate(
        notification_type=NotificationType.RESERVATION_EXPIRED,
        category=CATEGORY_RESERVATIONS,
        title="⏰ Reservation Expired",
        body="Your reservation {short_id} has expired.",
        target_url="/reservations/{reservation_id}",
    ),

    # -------------------------------------------------------------------------
    # System
    # -------------------------------------------------------------------------

    NotificationType.SYSTEM: NotificationTemplate(
        notification_type=NotificationType.SYSTEM,
        category=CATEGORY_SYSTEM,
        title="{title}",
        body="{body}",
    ),
}

_STATUS_TEMPLATES = {
    ReservationStatus.COMPLETED: NotificationType.RESERVATION_COMPLETED,
    ReservationStatus.CANCELLED: NotificationType.RESERVATION_CANCELLED,
    ReservationStatus.EXPIRED: NotificationType.RESERVATION_EXPIRED,
}


# =============================================================================
# Template Access Functions
# =============================================================================

def get_template(notification_type: NotificationType) -> Optional[NotificationTemplate]:
    """Get a template by notification type."""
    return TEMPLATES.get(notification_type)


def new_product_event(product: Product, category: Optional[str] = None) -> DeliveryEvent:
    """
    Build a new-product event.

    Args:
        product: The new product
        category: Name of the product's store category; products without
            one go out under new-products
    """
    event = TEMPLATES[NotificationType.NEW_PRODUCT].render(
        payload={"product_id": product.id, "store_id": product.store_id},
        product_name=product.name,
        product_id=product.id,
    )
    if category:
        event = event.model_copy(update={"category": category})
    return event


def price_drop_event(product: Product, old_price: float, category: Optional[str] = None) -> DeliveryEvent:
    """
    Build a price-drop event.

    Args:
        product: Product after the price change
        old_price: Price before the change
        category: Category to dispatch under (defaults to promotions)
    """
    event = TEMPLATES[NotificationType.PRICE_DROP].render(
        payload={
            "product_id": product.id,
            "store_id": product.store_id,
            "old_price": old_price,
            "new_price": product.price,
        },
        product_name=product.name,
        product_id=product.id,
        old_price=old_price,
        new_price=product.price,
    )
    if category:
        event = event.model_copy(update={"category": category})
    return event


def promotion_event(promotion: Promotion, product: Product) -> DeliveryEvent:
    return TEMPLATES[NotificationType.PROMOTION].render(
        payload={"promotion_id": promotion.id, "product_id": product.id, "store_id": product.store_id},
        product_name=product.name,
        product_id=product.id,
        promotional_price=promotion.promotional_price,
    )


def reservation_created_event(reservation: Reservation, product_name: str) -> DeliveryEvent:
    return TEMPLATES[NotificationType.RESERVATION_CREATED].render(
        payload={"reservation_id": reservation.id, "product_id": reservation.product_id},
        product_name=product_name,
        expires_at=reservation.expires_at.strftime("%H:%M"),
        reservation_id=reservation.id,
    )


def reservation_expiring_event(
    reservation: Reservation,
    product_name: str,
    minutes: int,
    urgent_threshold: int = 30,
) -> DeliveryEvent:
    """
    Build a reservation-expiring alert.

    The urgent variant is used when at most `urgent_threshold` minutes remain.
    """
    notification_type = (
        NotificationType.RESERVATION_URGENT if minutes <= urgent_threshold
        else NotificationType.RESERVATION_EXPIRING
    )
    return TEMPLATES[notification_type].render(
        payload={"reservation_id": reservation.id, "minutes_remaining": minutes},
        product_name=product_name,
        minutes=max(minutes, 0),
        reservation_id=reservation.id,
    )


def reservation_status_event(reservation_id: str, status: ReservationStatus) -> Optional[DeliveryEvent]:
    """
    Build a reservation status message.

    Returns:
        The event, or None for statuses that do not notify (active)
    """
    notification_type = _STATUS_TEMPLATES.get(ReservationStatus(status))
    if notification_type is None:
        return None
    return TEMPLATES[notification_type].render(
        payload={"reservation_id": reservation_id, "status": ReservationStatus(status).value},
        short_id=reservation_id[-8:],
        reservation_id=reservation_id,
    )


def system_message_event(title: str, body: str, category: str = CATEGORY_SYSTEM) -> DeliveryEvent:
    event = TEMPLATES[NotificationType.SYSTEM].render(title=title, body=body)
    if category != CATEGORY_SYSTEM:
        event = event.model_copy(update={"category": category})
    return event
