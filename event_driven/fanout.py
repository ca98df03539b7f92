"""
Notification fanout: one event in, one delivery per enabled channel out.

Planning is pure computation over the event, its category and the user's
resolved preference. Dispatching claims a NotificationRecord for each planned
delivery before sending it, so a redelivered event finds the claim and sends
nothing twice.

Design decisions:
- Event type -> category is a static table, not a decision made per handler
- Email goes out only to a known address, push only to registered tokens
- When the user's email frequency isn't ``immediate`` the email is marked
  deferred and queued for the digest instead of sent
- Transactional emails (password reset codes) ignore the preference flags and
  the frequency: they are always sent now when there is an address
- Any sender failure releases that delivery's claim and raises HandlerError,
  so the consumer's retry delivers what is still missing and nothing else
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from event_driven.envelope import EventEnvelope, EventTypes
from shared.channels import NotificationChannels
from shared.data_store import NotificationRecordStore
from shared.errors import HandlerError
from shared.models import Category, Channel, EmailFrequency, NotificationRecord, Preference, utcnow
from shared.preferences import PreferenceStore
from shared.templates import NotificationType, get_template

logger = logging.getLogger("fanout")


CATEGORY_BY_EVENT: dict[str, Category] = {
    EventTypes.URL_CREATED: Category.URL_CREATION,
    EventTypes.URL_MILESTONE: Category.MILESTONES,
    EventTypes.USER_CREATED: Category.SYSTEM,
    EventTypes.PASSWORD_RESET_REQUESTED: Category.SYSTEM,
    EventTypes.PASSWORD_RESET_COMPLETED: Category.SYSTEM,
}

TRANSACTIONAL_EMAIL_EVENTS = frozenset({EventTypes.PASSWORD_RESET_REQUESTED})

# Template values that must never be copied into stored records
_PRIVATE_VALUES = frozenset({"reset_token"})


def category_for(event_type: str) -> Category:
    """
    Raises:
        KeyError: The event type never produces notifications
    """
    return CATEGORY_BY_EVENT[event_type]


def action_key(event: EventEnvelope) -> str:
    """
    The business action an event stands for.

    Two envelopes for the same action (a redelivery, or a milestone published
    again after a retry) share the key and therefore share records.
    """
    payload = event.payload
    if event.type == EventTypes.URL_CREATED:
        return payload.short_code
    if event.type == EventTypes.URL_MILESTONE:
        return f"{payload.short_code}:{payload.clicks}"
    if event.type == EventTypes.USER_CREATED:
        return payload.user_id
    return event.id


@dataclass(frozen=True)
class DeliveryRequest:
    """
    Everything one channel sender needs for one notification.

    ``email_address`` is set for email, ``device_tokens`` for push; in-app
    only needs the user id.
    """
    channel: Channel
    user_id: str
    category: Category
    title: str
    message: str
    email_address: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    device_tokens: tuple[str, ...] = ()
    deferred: bool = False
    batch: Optional[EmailFrequency] = None
    data: dict[str, Any] = field(default_factory=dict)


class NotificationFanout:
    """
    Turns an event into channel deliveries and records what was dispatched.

    Example:
        fanout = NotificationFanout(channels, records, preferences)
        pref = preferences.get_or_create("u1")
        fanout.dispatch(event, pref, NotificationType.URL_CREATED, {"short_code": "abc123"})
    """

    def __init__(
        self,
        channels: NotificationChannels,
        records: NotificationRecordStore,
        preferences: PreferenceStore,
        clock: Callable = utcnow,
    ):
        self.channels = channels
        self.records = records
        self.preferences = preferences
        self._clock = clock

    # =========================================================================
    # Planning (pure)
    # =========================================================================

    def plan(
        self,
        event: EventEnvelope,
        preference: Preference,
        notification_type: NotificationType,
        values: dict[str, Any],
        email_address: Optional[str] = None,
    ) -> list[DeliveryRequest]:
        """
        Build one delivery request per channel that is enabled and reachable.

        Args:
            event: The decoded event being handled
            preference: The user's current preference
            notification_type: Which template to render
            values: Template values
            email_address: Address to use instead of the preference's own
        """
        category = category_for(event.type)
        template = get_template(notification_type)
        title, message = template.render_short(**values)
        data = {k: v for k, v in values.items() if k not in _PRIVATE_VALUES and v is not None}

        enabled = self.preferences.resolve_channels(preference, category)
        transactional = event.type in TRANSACTIONAL_EMAIL_EVENTS
        address = email_address or preference.email_address
        requests = []

        if address and (transactional or Channel.EMAIL in enabled):
            subject, body = template.render_email(**values)
            deferred = not transactional and preference.email_frequency != EmailFrequency.IMMEDIATE
            requests.append(DeliveryRequest(
                channel=Channel.EMAIL,
                user_id=preference.user_id,
                category=category,
                title=title,
                message=message,
                email_address=address,
                email_subject=subject,
                email_body=body,
                deferred=deferred,
                batch=preference.email_frequency if deferred else None,
                data=data,
            ))

        tokens = tuple(preference.token_values())
        if Channel.PUSH in enabled and tokens:
            requests.append(DeliveryRequest(
                channel=Channel.PUSH,
                user_id=preference.user_id,
                category=category,
                title=title,
                message=message,
                device_tokens=tokens,
                data=data,
            ))

        if Channel.IN_APP in enabled:
            requests.append(DeliveryRequest(
                channel=Channel.IN_APP,
                user_id=preference.user_id,
                category=category,
                title=title,
                message=message,
                data=data,
            ))

        return requests

    # =========================================================================
    # Dispatching
    # =========================================================================

    def dispatch(
        self,
        event: EventEnvelope,
        preference: Preference,
        notification_type: NotificationType,
        values: dict[str, Any],
        email_address: Optional[str] = None,
    ) -> list[NotificationRecord]:
        """
        Plan and send. Returns the records created by this call.

        Deliveries already recorded for the same business action are skipped.

        Raises:
            HandlerError: A channel failed; deliveries that did go out stay recorded
        """
        requests = self.plan(event, preference, notification_type, values, email_address)
        if not requests:
            logger.info(f"No enabled channels for user {preference.user_id} on {event}")
            return []

        key = action_key(event)
        dispatched = []
        for request in requests:
            record = NotificationRecord(
                user_id=request.user_id,
                category=request.category,
                channel=request.channel,
                source_event_type=event.type,
                action_key=key,
                title=request.title,
                message=request.message,
                data=request.data,
                deferred=request.deferred,
                created_at=self._clock(),
            )
            if not self.records.add_if_absent(record):
                logger.debug(f"Skipping duplicate {request.channel.value} delivery for {event}")
                continue
            try:
                self._send(request)
            except Exception as e:
                self.records.discard(record)
                if isinstance(e, HandlerError):
                    raise
                raise HandlerError(f"{request.channel.value} delivery failed for {event}: {e}") from e
            dispatched.append(record)

        return dispatched

    def _send(self, request: DeliveryRequest) -> None:
        if request.channel == Channel.EMAIL:
            if request.deferred:
                self.channels.email.defer(
                    request.email_address, request.email_subject, request.email_body, request.batch
                )
            else:
                self.channels.email.send(request.email_address, request.email_subject, request.email_body)
        elif request.channel == Channel.PUSH:
            self.channels.push.send(request.user_id, list(request.device_tokens), request.title, request.message)
        else:
            self.channels.in_app.send(request.user_id, request.title, request.message, request.data)
