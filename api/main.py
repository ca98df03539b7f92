"""
Preference API for the notification service.

Exposes the preference store and device-token registry to the rest of the
system, plus a read-only view of a user's notifications. Runs in the same
process as the notification consumer so both share one preference store.

Run with:
    python cli.py serve

Then visit http://localhost:3003/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from event_driven.notification_service import NotificationService
from shared.config import Settings
from shared.models import CamelModel, NotificationRecord, Preference, PreferenceUpdate

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger("preference_api")


class DeviceTokenRequest(BaseModel):
    """Body of a device-token registration."""
    token: str = Field(..., min_length=1)
    device: str = Field(default="unknown")


class UnreadCount(CamelModel):
    unread_count: int


class MarkedRead(CamelModel):
    """Result of mark-all-read: how many notifications changed."""
    count: int


# Module-level instance (set by the CLI, or built lazily with default settings)
_service: Optional[NotificationService] = None


def get_service() -> NotificationService:
    """Get the notification service whose stores this API serves."""
    global _service
    if _service is None:
        _service = NotificationService(Settings())
    return _service


def reset_api_state(service: Optional[NotificationService] = None) -> None:
    """Replace the served notification service (CLI wiring and tests)."""
    global _service
    _service = service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("Starting Preference API")
    yield
    logger.info("Shutting down")


app = FastAPI(
    title="Notification Preference API",
    description="""
    Notification preferences and push device tokens for URL shortener users.

    - `GET/PUT /users/{user_id}/preferences` - read (creating defaults) or partially update
    - `POST/DELETE /users/{user_id}/device-tokens` - register or remove a push token
    - `GET /users/{user_id}/notifications` - notifications dispatched to the user
    - `GET /users/{user_id}/notifications/unread-count` - how many are unread
    - `PUT /users/{user_id}/notifications/{id}/read`, `PUT .../mark-all-read` - mark as read
    - `DELETE /users/{user_id}/notifications/{id}` - remove from the inbox
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# =============================================================================
# Preferences
# =============================================================================

@app.get("/users/{user_id}/preferences", response_model=Preference, tags=["Preferences"])
def get_preferences(user_id: str, service: NotificationService = Depends(get_service)) -> Preference:
    """Get a user's preferences, creating the defaults on first access."""
    return service.preferences.get_or_create(user_id)


@app.put("/users/{user_id}/preferences", response_model=Preference, tags=["Preferences"])
def update_preferences(
    user_id: str,
    changes: PreferenceUpdate,
    service: NotificationService = Depends(get_service),
) -> Preference:
    """
    Partially update a user's preferences.

    Only the fields present in the body change; category settings merge per
    category and per channel.
    """
    preference = service.preferences.update(user_id, changes)
    logger.info(f"Updated preferences for user {user_id}: {sorted(changes.model_fields_set)}")
    return preference


# =============================================================================
# Device Tokens
# =============================================================================

@app.post(
    "/users/{user_id}/device-tokens",
    response_model=Preference,
    status_code=201,
    tags=["Device Tokens"],
)
def add_device_token(
    user_id: str,
    request: DeviceTokenRequest,
    service: NotificationService = Depends(get_service),
) -> Preference:
    """Register a push token. Re-registering a token replaces its old entry."""
    return service.devices.add_token(user_id, request.token, request.device)


@app.delete("/users/{user_id}/device-tokens/{token}", response_model=Preference, tags=["Device Tokens"])
def remove_device_token(
    user_id: str,
    token: str,
    service: NotificationService = Depends(get_service),
) -> Preference:
    """Remove a push token. Removing an unknown token is not an error."""
    return service.devices.remove_token(user_id, token)


# =============================================================================
# Notifications
# =============================================================================

@app.get("/users/{user_id}/notifications", response_model=list[NotificationRecord], tags=["Notifications"])
def list_notifications(
    user_id: str,
    limit: Optional[int] = Query(default=50, ge=1, le=500),
    service: NotificationService = Depends(get_service),
) -> list[NotificationRecord]:
    """A user's notifications, newest first."""
    return service.records.list_for_user(user_id, limit=limit)


@app.get("/users/{user_id}/notifications/unread-count", response_model=UnreadCount, tags=["Notifications"])
def unread_count(user_id: str, service: NotificationService = Depends(get_service)) -> UnreadCount:
    return UnreadCount(unread_count=service.records.unread_count(user_id))


@app.put("/users/{user_id}/notifications/mark-all-read", response_model=MarkedRead, tags=["Notifications"])
def mark_all_read(user_id: str, service: NotificationService = Depends(get_service)) -> MarkedRead:
    """Mark every unread notification of the user as read."""
    count = service.records.mark_all_read(user_id)
    logger.info(f"Marked {count} notification(s) read for user {user_id}")
    return MarkedRead(count=count)


@app.get("/users/{user_id}/notifications/{notification_id}", response_model=NotificationRecord, tags=["Notifications"])
def get_notification(
    user_id: str,
    notification_id: str,
    service: NotificationService = Depends(get_service),
) -> NotificationRecord:
    record = service.records.get(user_id, notification_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
    return record


@app.put(
    "/users/{user_id}/notifications/{notification_id}/read",
    response_model=NotificationRecord,
    tags=["Notifications"],
)
def mark_read(
    user_id: str,
    notification_id: str,
    service: NotificationService = Depends(get_service),
) -> NotificationRecord:
    record = service.records.mark_read(user_id, notification_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
    return record


@app.delete("/users/{user_id}/notifications/{notification_id}", status_code=204, tags=["Notifications"])
def delete_notification(
    user_id: str,
    notification_id: str,
    service: NotificationService = Depends(get_service),
) -> None:
    """
    Remove a notification from the user's inbox.

    The record is only flagged as deleted, so a redelivered event that
    produced it still won't notify the user again.
    """
    if not service.records.delete(user_id, notification_id):
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
