"""
Domain models for the URL shortener's event integration layer.

These are the durable records the consuming services keep: per-user
notification preferences (with their push device tokens), the notification
records produced by fanout, and the analytics click events and aggregates.

Design decisions:
- Using Pydantic for validation and serialization
- Wire and API representation is camelCase (userId, shortCode); Python
  attributes stay snake_case
- Timestamps are timezone-aware UTC
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Channel(str, Enum):
    """Delivery channels a notification can go out on."""
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "inApp"


class Category(str, Enum):
    """
    Notification categories.
    Each category can override the root channel flags of a preference.
    """
    URL_CREATION = "urlCreation"
    MILESTONES = "milestones"
    SYSTEM = "system"


class EmailFrequency(str, Enum):
    """How often email notifications go out. Anything but IMMEDIATE is batched."""
    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    BOT = "bot"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Notification Preferences
# =============================================================================

class ChannelSettings(CamelModel):
    """
    Per-channel opt-in flags.

    A flag left as None is unset and falls back to the next level: category
    settings fall back to the root flags, root flags fall back to the system
    defaults.
    """
    email: Optional[bool] = Field(default=None, description="Receive via email")
    push: Optional[bool] = Field(default=None, description="Receive push notifications")
    in_app: Optional[bool] = Field(default=None, description="Show in-app notifications")

    def get(self, channel: Channel) -> Optional[bool]:
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.PUSH:
            return self.push
        return self.in_app

    def merged_with(self, other: "ChannelSettings") -> "ChannelSettings":
        """Return a copy with every flag that is set on ``other`` applied."""
        return self.model_copy(update=other.model_dump(exclude_none=True))


class DeviceToken(CamelModel):
    """A push-notification token registered by one of the user's devices."""
    token: str = Field(..., min_length=1)
    device: str = Field(default="unknown")
    last_seen_at: datetime = Field(default_factory=utcnow)


class Preference(CamelModel):
    """
    A user's notification preferences. One per user, unique on user_id.

    Created lazily by the preference store the first time anyone asks for the
    user's preferences; never hard-deleted here.
    """
    user_id: str = Field(..., min_length=1, description="Owning user (not owned by this subsystem)")
    email_address: Optional[str] = Field(default=None)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)
    category_settings: dict[Category, ChannelSettings] = Field(default_factory=dict)
    email_frequency: EmailFrequency = Field(default=EmailFrequency.DAILY)
    device_tokens: list[DeviceToken] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def token_values(self) -> list[str]:
        return [dt.token for dt in self.device_tokens]


class PreferenceUpdate(CamelModel):
    """
    Partial preference update. Only fields that were supplied are applied.

    ``category_settings`` is merged per category and per channel, so
    ``{"urlCreation": {"email": false}}`` leaves the other categories and the
    other urlCreation flags alone.
    """
    email_address: Optional[str] = None
    channels: Optional[ChannelSettings] = None
    category_settings: Optional[dict[Category, ChannelSettings]] = None
    email_frequency: Optional[EmailFrequency] = None


# =============================================================================
# Notification Records
# =============================================================================

class NotificationRecord(CamelModel):
    """
    One delivery that fanout actually dispatched.

    Unique on (user_id, source_event_type, category, action_key, channel) so a
    redelivered event cannot produce a second record.

    Deleting a record from the user's inbox only flags it: the record keeps
    its key, so a later redelivery still finds it and sends nothing.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    category: Category
    channel: Channel
    source_event_type: str
    action_key: str
    title: str = ""
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    deferred: bool = False
    read: bool = False
    deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def idempotency_key(self) -> tuple[str, str, str, str, str]:
        return (
            self.user_id,
            self.source_event_type,
            self.category.value,
            self.action_key,
            self.channel.value,
        )


# =============================================================================
# Analytics
# =============================================================================

_BOT_MARKERS = ("bot", "crawler", "spider", "slurp", "curl", "wget")
_TABLET_MARKERS = ("ipad", "tablet", "kindle", "silk")
_MOBILE_MARKERS = ("mobile", "iphone", "ipod", "android", "blackberry", "windows phone")


def detect_device_type(user_agent: Optional[str]) -> DeviceType:
    """Classify a User-Agent header. Unknown or missing agents count as desktop."""
    if not user_agent:
        return DeviceType.DESKTOP
    ua = user_agent.lower()
    if any(marker in ua for marker in _BOT_MARKERS):
        return DeviceType.BOT
    if any(marker in ua for marker in _TABLET_MARKERS):
        return DeviceType.TABLET
    # Android tablets omit "mobile"
    if "android" in ua and "mobile" not in ua:
        return DeviceType.TABLET
    if any(marker in ua for marker in _MOBILE_MARKERS):
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


class TrackedUrl(CamelModel):
    """Analytics baseline for a short code: who owns it and its running click total."""
    short_code: str
    original_url: Optional[str] = None
    user_id: Optional[str] = None
    url_created_at: Optional[datetime] = None
    total_clicks: int = 0


class ClickEvent(CamelModel):
    """A single redirect, as recorded by the analytics service."""
    event_id: str = Field(..., description="Envelope id; clicks are unique on it")
    short_code: str
    original_url: Optional[str] = None
    user_id: Optional[str] = None
    visitor_hash: Optional[str] = None
    timestamp: datetime
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    ip_hash: Optional[str] = None
    country_code: Optional[str] = None
    device_type: DeviceType = DeviceType.DESKTOP
    created_at: datetime = Field(default_factory=utcnow)


class UrlStat(CamelModel):
    """
    Daily click aggregate for one short code.

    ``created_at`` is the start of the UTC day the bucket covers; retention
    ages buckets by it.
    """
    short_code: str
    day: date
    total_clicks: int = 0
    unique_visitors: int = 0
    device_stats: dict[str, int] = Field(default_factory=dict)
    country_stats: dict[str, int] = Field(default_factory=dict)
    referer_stats: dict[str, int] = Field(default_factory=dict)
    created_at: datetime
    last_click_at: Optional[datetime] = None
