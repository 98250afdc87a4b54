"""
Domain models for the notification engine.

Design decisions:
- Using Pydantic for validation and serialization
- The data store keeps plain dict rows; components validate rows into these
  models at the boundary (`Model.model_validate(row)`)
- Catalog rows (products, reservations, ...) are owned by external
  collaborators; the engine only reads the fields it needs from them
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================

class SourceChannel(str, Enum):
    """The channel that actually delivered a notification."""
    REMOTE = "remote"         # Web push to a subscribed endpoint
    LOCAL = "local"           # Platform notification (permission granted)
    IN_APP = "in-app"         # Transient banner inside the app
    DATABASE = "database"     # Nothing fired, history row only


class PermissionState(str, Enum):
    """Local notification permission, as reported by the platform."""
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


class UserType(str, Enum):
    CLIENT = "client"
    STORE = "store"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# =============================================================================
# Notification Models
# =============================================================================

class NotificationCategory(BaseModel):
    """
    A notification category.

    Global categories have no store scope. Store categories are created by the
    category sync from the store's product categories. `name` is unique within
    a scope.
    """
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    description: str = ""
    is_active: bool = True
    scope_store_id: Optional[str] = Field(
        default=None,
        description="Owning store, or None for global categories",
    )
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_global(self) -> bool:
        return self.scope_store_id is None


class UserPreference(BaseModel):
    """Opt-in state of one user for one category. At most one per pair."""
    id: str = Field(default_factory=new_id)
    user_id: str
    category_id: str
    is_enabled: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryEvent(BaseModel):
    """
    Something worth telling a user about.

    Ephemeral: only its rendered NotificationRecord is persisted. `category`
    is a category id or name, resolved by the Category Resolver at dispatch.
    """
    title: str = Field(..., min_length=1)
    body: str
    category: str = Field(..., min_length=1)
    target_url: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def fingerprint(self) -> str:
        """Identity used to coalesce concurrent dispatches of the same event."""
        return f"{self.category}|{self.title}|{self.body}|{self.target_url or ''}"


class NotificationRecord(BaseModel):
    """
    Persisted notification history row.

    Created once at dispatch time; afterwards only mark-read and delete touch it.
    """
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    message: str
    category: str
    source_channel: SourceChannel = SourceChannel.DATABASE
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionRecord(BaseModel):
    """A browser push subscription. One row per endpoint."""
    id: str = Field(default_factory=new_id)
    user_id: str
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    category: Optional[str] = None
    is_active: bool = True
    updated_at: datetime = Field(default_factory=utcnow)

    def subscription_info(self) -> dict[str, Any]:
        """Shape expected by push transports."""
        return {"endpoint": self.endpoint, "keys": self.keys.model_dump()}


# =============================================================================
# Result Models
# =============================================================================

class ChannelAttempt(BaseModel):
    """One step of the delivery chain for one recipient."""
    channel: SourceChannel
    success: bool
    skipped: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class DeliveryOutcome(BaseModel):
    """Result of driving the delivery chain for one recipient."""
    success: bool
    channel_used: SourceChannel
    record: NotificationRecord
    persisted: bool = True
    attempts: list[ChannelAttempt] = Field(default_factory=list)

    model_config = ConfigDict(use_enum_values=True)


class DispatchSummary(BaseModel):
    """Aggregate counts for one dispatch."""
    sent: int = 0
    filtered: int = 0
    total_candidates: int = 0
    failed: int = 0

    def merge(self, other: "DispatchSummary") -> "DispatchSummary":
        return DispatchSummary(
            sent=self.sent + other.sent,
            filtered=self.filtered + other.filtered,
            total_candidates=self.total_candidates + other.total_candidates,
            failed=self.failed + other.failed,
        )


class NotificationStats(BaseModel):
    total: int = 0
    unread: int = 0


class CategorySyncReport(BaseModel):
    """Outcome of syncing a store's categories into notification categories."""
    store_id: str
    created: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


# =============================================================================
# Catalog Rows (read-only for the engine)
# =============================================================================

class StoreCategory(BaseModel):
    """A product category defined by a store in the catalog."""
    id: str
    store_id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    id: str
    store_id: str
    name: str
    price: float = Field(..., ge=0)
    category_id: Optional[str] = None


class Promotion(BaseModel):
    id: str
    product_id: str
    store_id: Optional[str] = None
    promotional_price: float = Field(..., ge=0)


class Reservation(BaseModel):
    id: str
    product_id: str
    client_id: str
    store_id: Optional[str] = None
    status: ReservationStatus = ReservationStatus.ACTIVE
    expires_at: datetime
    alert_sent: bool = False

    model_config = ConfigDict(use_enum_values=True)

    def minutes_remaining(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return int((self.expires_at - now).total_seconds() // 60)


class UserProfile(BaseModel):
    """
    A platform user.

    `preferred_categories` is the legacy interest list. None means the user
    never chose, which is treated as interested in everything.
    """
    id: str
    name: str = ""
    user_type: UserType = UserType.CLIENT
    preferred_categories: Optional[list[str]] = None

    model_config = ConfigDict(use_enum_values=True)
