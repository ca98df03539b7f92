"""
Notification service.

Consumes URL and identity events from its own queue and decides when and how
to notify the user. All "when to notify" logic lives here; the producing
services only publish events and don't know notifications exist.

Design decisions:
- One handler per event type, registered on the queue's Consumer
- Every handler resolves the user's preference through the PreferenceStore
  (get-or-create), never by reading or writing preference fields itself
- Fanout does the channel selection and records what went out; handlers only
  pick the template and its values
- Handlers raise on failure and let the consumer retry or dead-letter
"""

import logging
from typing import Optional

from event_driven.consumer import Consumer
from event_driven.envelope import EventEnvelope, EventTypes
from event_driven.fanout import NotificationFanout
from shared.channels import NotificationChannels
from shared.config import Settings
from shared.data_store import NotificationRecordStore
from shared.models import NotificationRecord
from shared.preferences import DeviceTokenRegistry, PreferenceStore
from shared.templates import NotificationType

logger = logging.getLogger("notification_service")


class NotificationService:
    """
    Event-driven notification service.

    Example:
        service = NotificationService(settings)
        consumer = Consumer(broker, settings.notification_queue, settings)
        service.register(consumer)
        consumer.start()
    """

    def __init__(
        self,
        settings: Settings,
        preferences: Optional[PreferenceStore] = None,
        records: Optional[NotificationRecordStore] = None,
        channels: Optional[NotificationChannels] = None,
    ):
        """
        Args:
            settings: Process configuration
            preferences: Preference store (defaults to a new in-memory one)
            records: Notification record store (defaults to a new in-memory one)
            channels: Channel senders (defaults to new mock channels)
        """
        self.preferences = preferences or PreferenceStore(settings)
        self.records = records or NotificationRecordStore()
        self.channels = channels or NotificationChannels(
            email_from=settings.email_from,
            history_limit=settings.channel_history_limit,
        )
        self.devices = DeviceTokenRegistry(self.preferences)
        self.fanout = NotificationFanout(self.channels, self.records, self.preferences)

    def register(self, consumer: Consumer) -> None:
        """Register a handler for every event type the notification queue binds."""
        consumer.register(EventTypes.URL_CREATED, self._handle_url_created)
        consumer.register(EventTypes.URL_MILESTONE, self._handle_url_milestone)
        consumer.register(EventTypes.USER_CREATED, self._handle_user_created)
        consumer.register(EventTypes.PASSWORD_RESET_REQUESTED, self._handle_password_reset_requested)
        consumer.register(EventTypes.PASSWORD_RESET_COMPLETED, self._handle_password_reset_completed)
        logger.info(f"NotificationService registered on '{consumer.queue}'")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_url_created(self, event: EventEnvelope) -> list[NotificationRecord]:
        """Tell the owner their short link is ready. Anonymous links notify nobody."""
        payload = event.payload
        if not payload.user_id:
            logger.info(f"Skipping {event}: anonymous URL {payload.short_code}")
            return []

        logger.info(f"Handling url.created: user={payload.user_id}, short_code={payload.short_code}")
        preference = self.preferences.get_or_create(payload.user_id)
        return self.fanout.dispatch(event, preference, NotificationType.URL_CREATED, {
            "short_code": payload.short_code,
            "original_url": payload.original_url,
        })

    def _handle_url_milestone(self, event: EventEnvelope) -> list[NotificationRecord]:
        payload = event.payload
        logger.info(
            f"Handling url.milestone: user={payload.user_id}, "
            f"short_code={payload.short_code}, clicks={payload.clicks}"
        )
        preference = self.preferences.get_or_create(payload.user_id)
        return self.fanout.dispatch(event, preference, NotificationType.MILESTONE_REACHED, {
            "short_code": payload.short_code,
            "clicks": payload.clicks,
        })

    def _handle_user_created(self, event: EventEnvelope) -> list[NotificationRecord]:
        """Create the preference record eagerly (with the address) and welcome the user."""
        payload = event.payload
        logger.info(f"Handling user.created: user={payload.user_id}")
        preference = self.preferences.get_or_create(payload.user_id, payload.email)
        return self.fanout.dispatch(event, preference, NotificationType.WELCOME, {
            "name": payload.name or "there",
        })

    def _handle_password_reset_requested(self, event: EventEnvelope) -> list[NotificationRecord]:
        """
        Send the reset code.

        The email is transactional: it goes to the address in the event right
        away, whatever the user's email flags and frequency say.
        """
        payload = event.payload
        logger.info(f"Handling password.reset.requested: user={payload.user_id}")
        preference = self.preferences.get_or_create(payload.user_id, payload.email)
        return self.fanout.dispatch(
            event,
            preference,
            NotificationType.PASSWORD_RESET_REQUESTED,
            {"reset_token": payload.reset_token, "expires_at": payload.expires_at},
            email_address=payload.email,
        )

    def _handle_password_reset_completed(self, event: EventEnvelope) -> list[NotificationRecord]:
        payload = event.payload
        logger.info(f"Handling password.reset.completed: user={payload.user_id}")
        preference = self.preferences.get_or_create(payload.user_id, payload.email)
        return self.fanout.dispatch(event, preference, NotificationType.PASSWORD_RESET_COMPLETED, {})
