"""
Identity service simulator.

Registers users and runs the password reset flow, publishing
user.created, password.reset.requested and password.reset.completed.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from event_driven.envelope import (
    EventEnvelope,
    password_reset_completed,
    password_reset_requested,
    user_created,
)
from event_driven.publisher import Publisher
from shared.models import utcnow

logger = logging.getLogger("identity_service")


class IdentityService:
    """
    Simulated identity service that publishes events.

    Example:
        service = IdentityService(publisher)
        event = service.register_user("alice@example.com", name="Alice")
        service.request_password_reset(event.payload.user_id, "alice@example.com")
    """

    def __init__(self, publisher: Publisher, reset_ttl: timedelta = timedelta(hours=1)):
        self.publisher = publisher
        self.reset_ttl = reset_ttl
        self.pending_resets: dict[str, str] = {}  # user_id -> token

    def register_user(
        self,
        email: str,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EventEnvelope:
        user_id = user_id or str(uuid4())
        logger.info(f"Registered user {user_id} <{email}>")
        return self.publisher.publish(user_created(user_id, email=email, name=name))

    def request_password_reset(self, user_id: str, email: str) -> EventEnvelope:
        token = secrets.token_urlsafe(24)
        self.pending_resets[user_id] = token
        logger.info(f"Password reset requested for user {user_id}")
        return self.publisher.publish(
            password_reset_requested(user_id, email, token, expires_at=utcnow() + self.reset_ttl)
        )

    def complete_password_reset(self, user_id: str, token: str, email: Optional[str] = None) -> EventEnvelope:
        """
        Raises:
            ValueError: The token doesn't match the pending reset
            PublishError: The event could not be published
        """
        if self.pending_resets.get(user_id) != token:
            raise ValueError(f"Invalid or expired reset token for user {user_id}")
        del self.pending_resets[user_id]
        logger.info(f"Password reset completed for user {user_id}")
        return self.publisher.publish(password_reset_completed(user_id, email=email))
