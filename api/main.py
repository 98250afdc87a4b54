"""
FastAPI application for the notification engine.

This application provides:
1. Preference endpoints (/preferences/...)
2. Category endpoints, including the store category sync (/categories/...)
3. Dispatch endpoints (/dispatch/...)
4. Notification history endpoints (/notifications/...)
5. Push subscription endpoints (/subscriptions)

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dispatch.audience import (
    ActiveSubscribersAudience,
    AllClientsAudience,
    AudienceSelector,
    ExplicitAudience,
    PreferredCategoryAudience,
)
from dispatch.engine import NotificationEngine, build_engine
from shared.config import get_settings
from shared.errors import (
    AudienceResolutionError,
    LockTimeoutError,
    PreferenceValidationError,
    PreferenceWriteError,
)
from shared.logging_config import configure_logging
from shared.models import (
    CategorySyncReport,
    DeliveryEvent,
    DispatchSummary,
    NotificationCategory,
    NotificationRecord,
    NotificationStats,
    PushKeys,
    PushSubscriptionRecord,
    UserPreference,
)

logger = logging.getLogger("api")


# =============================================================================
# Engine Dependency
# =============================================================================

_engine: Optional[NotificationEngine] = None


def get_engine() -> NotificationEngine:
    """Get the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def reset_api_state(engine: Optional[NotificationEngine] = None) -> Optional[NotificationEngine]:
    """Replace the engine singleton (useful for testing)."""
    global _engine
    _engine = engine
    return _engine


# =============================================================================
# Request Models
# =============================================================================

class PreferenceUpdate(BaseModel):
    enabled: bool


class BulkPreferenceUpdate(BaseModel):
    enabled: bool
    store_id: Optional[str] = None


class AudienceSpec(BaseModel):
    """Which users a dispatch considers."""
    kind: Literal["users", "clients", "preferred", "subscribers"] = "preferred"
    user_ids: list[str] = Field(default_factory=list)
    category: Optional[str] = None

    def to_selector(self, event: DeliveryEvent) -> AudienceSelector:
        if self.kind == "users":
            return ExplicitAudience(self.user_ids)
        if self.kind == "clients":
            return AllClientsAudience()
        if self.kind == "subscribers":
            return ActiveSubscribersAudience(self.category)
        return PreferredCategoryAudience(self.category or event.category)


class DispatchRequestBody(BaseModel):
    event: DeliveryEvent
    audience: AudienceSpec = Field(default_factory=AudienceSpec)
    store_id: Optional[str] = None


class SystemMessageBody(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    body: str


class SubscriptionBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    category: Optional[str] = None


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Notification Engine API")
    engine = get_engine()
    await engine.categories.ensure_global_categories()
    await engine.start()
    yield
    await engine.stop()
    logger.info("Shutting down")


# Create the FastAPI app
app = FastAPI(
    title="Notification Engine",
    description="""
    Notification dispatch and preference synchronization.

    - **Preferences**: per-user, per-category opt-in (default on)
    - **Dispatch**: fan an event out to an audience through push, local
      notification, in-app banner and history
    - **History**: read, mark read and delete delivered notifications
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Error Mapping
# =============================================================================

@app.exception_handler(PreferenceValidationError)
async def preference_validation_handler(request: Request, exc: PreferenceValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(PreferenceWriteError)
async def preference_write_handler(request: Request, exc: PreferenceWriteError):
    fallback: Any = exc.fallback
    if isinstance(fallback, list):
        fallback = [p.model_dump(mode="json") for p in fallback]
    elif isinstance(fallback, BaseModel):
        fallback = fallback.model_dump(mode="json")
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "saved_locally": True, "fallback": fallback},
    )


@app.exception_handler(LockTimeoutError)
async def lock_timeout_handler(request: Request, exc: LockTimeoutError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(AudienceResolutionError)
async def audience_handler(request: Request, exc: AudienceResolutionError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check(engine: NotificationEngine = Depends(get_engine)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "notification-engine",
        "realtime": engine.listener is not None and engine.listener.is_running,
        "cache": engine.cache.stats(),
    }


# =============================================================================
# Preferences
# =============================================================================

@app.get("/preferences/{user_id}", response_model=list[UserPreference], tags=["Preferences"])
async def get_preferences(user_id: str, engine: NotificationEngine = Depends(get_engine)):
    """Explicit preference rows of a user. Missing categories are enabled."""
    return await engine.preferences.get_preferences(user_id)


@app.get("/preferences/{user_id}/{category_id}", tags=["Preferences"])
async def is_enabled(user_id: str, category_id: str, engine: NotificationEngine = Depends(get_engine)):
    return {
        "user_id": user_id,
        "category_id": category_id,
        "enabled": await engine.is_enabled(user_id, category_id),
    }


@app.put("/preferences/{user_id}/{category_id}", response_model=UserPreference, tags=["Preferences"])
async def set_enabled(
    user_id: str,
    category_id: str,
    update: PreferenceUpdate,
    engine: NotificationEngine = Depends(get_engine),
):
    return await engine.set_enabled(user_id, category_id, update.enabled)


@app.put("/preferences/{user_id}", response_model=list[UserPreference], tags=["Preferences"])
async def set_all_enabled(
    user_id: str,
    update: BulkPreferenceUpdate,
    engine: NotificationEngine = Depends(get_engine),
):
    """Switch every category the user can see on or off."""
    return await engine.set_all_enabled(user_id, update.enabled, store_id=update.store_id)


# =============================================================================
# Categories
# =============================================================================

@app.get("/categories", response_model=list[NotificationCategory], tags=["Categories"])
async def get_categories(
    user_type: str = "client",
    store_id: Optional[str] = None,
    engine: NotificationEngine = Depends(get_engine),
):
    return await engine.get_categories_for_user(user_type, store_id)


@app.post("/categories/sync/{store_id}", response_model=CategorySyncReport, tags=["Categories"])
async def sync_categories(store_id: str, engine: NotificationEngine = Depends(get_engine)):
    """Create notification categories for the store's product categories."""
    return await engine.categories.sync_store_categories_to_notifications(store_id)


# =============================================================================
# Dispatch
# =============================================================================

@app.post("/dispatch", response_model=DispatchSummary, tags=["Dispatch"])
async def dispatch(body: DispatchRequestBody, engine: NotificationEngine = Depends(get_engine)):
    """Dispatch an event to an audience."""
    selector = body.audience.to_selector(body.event)
    return await engine.dispatch_to_audience(body.event, selector, body.store_id)


@app.post("/dispatch/system", response_model=DispatchSummary, tags=["Dispatch"])
async def dispatch_system_message(body: SystemMessageBody, engine: NotificationEngine = Depends(get_engine)):
    return await engine.send_system_message(body.user_ids, body.title, body.body)


@app.post("/dispatch/reservations/{reservation_id}/expiring", response_model=DispatchSummary, tags=["Dispatch"])
async def dispatch_reservation_expiring(reservation_id: str, engine: NotificationEngine = Depends(get_engine)):
    """Send the expiry reminder for a reservation (at most once)."""
    if await engine.data_store.get_reservation(reservation_id) is None:
        raise HTTPException(status_code=404, detail=f"Reservation not found: {reservation_id}")
    return await engine.coordinator.notify_reservation_expiring(reservation_id)


# =============================================================================
# Notification History
# =============================================================================

@app.get("/notifications/{user_id}", response_model=list[NotificationRecord], tags=["Notifications"])
async def get_user_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: Optional[int] = None,
    engine: NotificationEngine = Depends(get_engine),
):
    return await engine.get_user_notifications(user_id, unread_only=unread_only, limit=limit)


@app.get("/notifications/{user_id}/stats", response_model=NotificationStats, tags=["Notifications"])
async def get_stats(user_id: str, engine: NotificationEngine = Depends(get_engine)):
    return await engine.get_stats(user_id)


@app.post("/notifications/{user_id}/read-all", tags=["Notifications"])
async def mark_all_as_read(user_id: str, engine: NotificationEngine = Depends(get_engine)):
    return {"updated": await engine.history.mark_all_as_read(user_id)}


@app.post("/notifications/{notification_id}/read", response_model=NotificationRecord, tags=["Notifications"])
async def mark_as_read(notification_id: str, engine: NotificationEngine = Depends(get_engine)):
    record = await engine.mark_as_read(notification_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
    return record


@app.delete("/notifications/{notification_id}", status_code=204, tags=["Notifications"])
async def delete_notification(notification_id: str, engine: NotificationEngine = Depends(get_engine)):
    if not await engine.delete_notification(notification_id):
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")


# =============================================================================
# Push Subscriptions
# =============================================================================

@app.post("/subscriptions", response_model=PushSubscriptionRecord, tags=["Subscriptions"])
async def subscribe(body: SubscriptionBody, engine: NotificationEngine = Depends(get_engine)):
    return await engine.subscriptions.subscribe(body.user_id, body.endpoint, body.keys, body.category)


@app.delete("/subscriptions", status_code=204, tags=["Subscriptions"])
async def unsubscribe(endpoint: str, engine: NotificationEngine = Depends(get_engine)):
    if not await engine.subscriptions.unsubscribe(endpoint):
        raise HTTPException(status_code=404, detail="Subscription not found")
