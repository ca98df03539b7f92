"""
Event envelope and the event taxonomy.

Every domain event travels as an EventEnvelope: a type tag from a closed
taxonomy, a typed payload, the publish timestamp and the producing service.
The routing key on the broker is always the type tag.

Design decisions:
- Events are named <noun>.<verb> (url.created, password.reset.requested)
- Decoding yields a closed union keyed by ``type``; unknown tags are rejected
  explicitly instead of being ignored
- Envelopes and payloads are frozen: consumers treat a delivered event as a
  value and never mutate and republish it
- Adding optional payload fields is backward compatible; renaming or removing
  fields needs a new, versioned type tag
"""

import json
from datetime import datetime
from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from shared.errors import DecodeError, UnknownEventType


# =============================================================================
# Event Type Constants
# =============================================================================

class EventTypes:
    """
    Constants for event type names (and routing keys).

    Using constants prevents typos and makes it easy to see all event types.
    """
    # URL events (owned by the URL shortener / redirect services)
    URL_CREATED = "url.created"
    URL_REDIRECT = "url.redirect"
    URL_MILESTONE = "url.milestone"

    # Identity events (owned by the identity service)
    USER_CREATED = "user.created"
    PASSWORD_RESET_REQUESTED = "password.reset.requested"
    PASSWORD_RESET_COMPLETED = "password.reset.completed"

    ALL = frozenset({
        URL_CREATED,
        URL_REDIRECT,
        URL_MILESTONE,
        USER_CREATED,
        PASSWORD_RESET_REQUESTED,
        PASSWORD_RESET_COMPLETED,
    })


# =============================================================================
# Payloads
# =============================================================================

class Payload(BaseModel):
    """Base for event payloads: frozen, camelCase on the wire, unknown keys ignored."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class UrlCreated(Payload):
    user_id: Optional[str] = None
    short_code: str
    original_url: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class UrlRedirect(Payload):
    short_code: str
    original_url: Optional[str] = None
    user_id: Optional[str] = None
    visitor_hash: Optional[str] = None
    timestamp: Optional[datetime] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    ip_hash: Optional[str] = None
    country_code: Optional[str] = None


class UrlMilestone(Payload):
    user_id: str
    short_code: str
    clicks: int = Field(..., ge=1)


class UserCreated(Payload):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class PasswordResetRequested(Payload):
    user_id: str
    email: str
    reset_token: str
    expires_at: Optional[datetime] = None


class PasswordResetCompleted(Payload):
    user_id: str
    email: Optional[str] = None


EventPayload = Union[
    UrlCreated,
    UrlRedirect,
    UrlMilestone,
    UserCreated,
    PasswordResetRequested,
    PasswordResetCompleted,
]

PAYLOAD_TYPES: dict[str, type[Payload]] = {
    EventTypes.URL_CREATED: UrlCreated,
    EventTypes.URL_REDIRECT: UrlRedirect,
    EventTypes.URL_MILESTONE: UrlMilestone,
    EventTypes.USER_CREATED: UserCreated,
    EventTypes.PASSWORD_RESET_REQUESTED: PasswordResetRequested,
    EventTypes.PASSWORD_RESET_COMPLETED: PasswordResetCompleted,
}


# =============================================================================
# Envelope
# =============================================================================

class EventEnvelope(BaseModel):
    """
    The canonical serialized event.

    Attributes:
        id: Unique identifier for this event instance (message id on the wire)
        type: Taxonomy tag; also the routing key
        payload: Typed, type-specific data
        produced_at: Set by the publisher at publish time, not by the consumer
        source: Which service published the event
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    payload: EventPayload
    produced_at: Optional[datetime] = None
    source: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _payload_for_type(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        event_type = data.get("type")
        payload_type = PAYLOAD_TYPES.get(event_type)
        if payload_type is None:
            raise ValueError(f"unknown event type {event_type!r}")
        payload = data.get("payload")
        if isinstance(payload, Payload):
            if not isinstance(payload, payload_type):
                raise ValueError(
                    f"payload {type(payload).__name__} does not match event type {event_type!r}"
                )
        else:
            payload = payload_type.model_validate(payload if payload is not None else {})
        return {**data, "payload": payload}

    @property
    def routing_key(self) -> str:
        return self.type

    def partition_key(self) -> str:
        """
        Key whose events must be handled one at a time.

        The owning user when there is one; otherwise the short code; otherwise
        the event itself (no ordering constraint).
        """
        user_id = getattr(self.payload, "user_id", None)
        if user_id:
            return f"user:{user_id}"
        short_code = getattr(self.payload, "short_code", None)
        if short_code:
            return f"url:{short_code}"
        return f"event:{self.id}"

    def __str__(self) -> str:
        return f"Event({self.type}, id={self.id[:8]}, source={self.source})"


# =============================================================================
# Wire Codec
# =============================================================================

def encode(event: EventEnvelope) -> bytes:
    """Serialize an envelope to the JSON wire format."""
    return event.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode(body: bytes) -> EventEnvelope:
    """
    Parse a delivered message body into an envelope.

    Raises:
        UnknownEventType: The type tag is outside the taxonomy
        DecodeError: Anything else that makes the body unusable
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Message body is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError("Message body is not a JSON object")
    if "type" not in data:
        raise DecodeError("Envelope has no type")
    if not isinstance(data["type"], str):
        raise DecodeError(f"Envelope type must be a string, got {type(data['type']).__name__}")
    if data["type"] not in EventTypes.ALL:
        raise UnknownEventType(str(data["type"]))

    try:
        return EventEnvelope.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"Invalid {data['type']} envelope: {e.error_count()} error(s): {e}") from e


# =============================================================================
# Event Factories
# =============================================================================

def url_created(
    short_code: str,
    original_url: str,
    user_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    source: str = "url-shortener-service",
) -> EventEnvelope:
    """Create a url.created event. Published when a short link is created."""
    return EventEnvelope(
        type=EventTypes.URL_CREATED,
        source=source,
        payload=UrlCreated(
            user_id=user_id,
            short_code=short_code,
            original_url=original_url,
            created_at=created_at,
            expires_at=expires_at,
        ),
    )


def url_redirect(
    short_code: str,
    original_url: Optional[str] = None,
    user_id: Optional[str] = None,
    visitor_hash: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    user_agent: Optional[str] = None,
    referer: Optional[str] = None,
    ip_hash: Optional[str] = None,
    country_code: Optional[str] = None,
    source: str = "redirect-service",
) -> EventEnvelope:
    """
    Create a url.redirect event.

    Published on every redirect. Carries the URL owner so consumers don't need
    to look it up.
    """
    return EventEnvelope(
        type=EventTypes.URL_REDIRECT,
        source=source,
        payload=UrlRedirect(
            short_code=short_code,
            original_url=original_url,
            user_id=user_id,
            visitor_hash=visitor_hash,
            timestamp=timestamp,
            user_agent=user_agent,
            referer=referer,
            ip_hash=ip_hash,
            country_code=country_code,
        ),
    )


def url_milestone(
    user_id: str,
    short_code: str,
    clicks: int,
    source: str = "analytics-service",
) -> EventEnvelope:
    """Create a url.milestone event. Published when a link's clicks reach a threshold."""
    return EventEnvelope(
        type=EventTypes.URL_MILESTONE,
        source=source,
        payload=UrlMilestone(user_id=user_id, short_code=short_code, clicks=clicks),
    )


def user_created(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    source: str = "identity-service",
) -> EventEnvelope:
    """Create a user.created event."""
    return EventEnvelope(
        type=EventTypes.USER_CREATED,
        source=source,
        payload=UserCreated(user_id=user_id, email=email, name=name),
    )


def password_reset_requested(
    user_id: str,
    email: str,
    reset_token: str,
    expires_at: Optional[datetime] = None,
    source: str = "identity-service",
) -> EventEnvelope:
    """Create a password.reset.requested event."""
    return EventEnvelope(
        type=EventTypes.PASSWORD_RESET_REQUESTED,
        source=source,
        payload=PasswordResetRequested(
            user_id=user_id,
            email=email,
            reset_token=reset_token,
            expires_at=expires_at,
        ),
    )


def password_reset_completed(
    user_id: str,
    email: Optional[str] = None,
    source: str = "identity-service",
) -> EventEnvelope:
    """Create a password.reset.completed event."""
    return EventEnvelope(
        type=EventTypes.PASSWORD_RESET_COMPLETED,
        source=source,
        payload=PasswordResetCompleted(user_id=user_id, email=email),
    )
