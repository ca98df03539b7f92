"""
Shared infrastructure for the URL shortener event integration layer.

This package contains code used by the producing and consuming services:
- Domain models (Preference, NotificationRecord, ClickEvent, UrlStat)
- Settings and the error taxonomy
- In-memory record stores, the preference store and device-token registry
- Mock notification channels (Email, Push, In-app)
- Notification templates
"""

from shared.config import Settings
from shared.models import (
    Category,
    Channel,
    ChannelSettings,
    DeviceToken,
    EmailFrequency,
    NotificationRecord,
    Preference,
    PreferenceUpdate,
)
from shared.data_store import AnalyticsStore, NotificationRecordStore, PreferenceRepository
from shared.preferences import DeviceTokenRegistry, PreferenceStore
from shared.channels import EmailChannel, InAppChannel, NotificationResult, PushChannel

__all__ = [
    "Settings",
    "Category",
    "Channel",
    "ChannelSettings",
    "DeviceToken",
    "EmailFrequency",
    "NotificationRecord",
    "Preference",
    "PreferenceUpdate",
    "AnalyticsStore",
    "NotificationRecordStore",
    "PreferenceRepository",
    "DeviceTokenRegistry",
    "PreferenceStore",
    "EmailChannel",
    "InAppChannel",
    "NotificationResult",
    "PushChannel",
]
