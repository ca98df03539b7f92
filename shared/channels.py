"""
Mock notification channels.

These channels simulate delivery by logging the output. In a real system
they would integrate with:
- Email: SMTP / SendGrid / AWS SES
- Push: FCM / APNs
- In-app: a websocket gateway

Design decisions:
- All sends are logged for visibility
- Channels keep a bounded history of sent messages for inspection and tests;
  the oldest entries drop off once it is full
- Channel failures can be simulated for testing (fail_rate)
- A failed send raises ChannelError so the caller can retry the delivery
"""

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from shared.models import Channel, EmailFrequency, utcnow

logger = logging.getLogger("notifications")

DEFAULT_HISTORY_LIMIT = 1000


class ChannelError(Exception):
    """A channel could not deliver a message."""

    def __init__(self, channel: Channel, recipient: str, reason: str):
        super().__init__(f"{channel.value} delivery to {recipient} failed: {reason}")
        self.channel = channel
        self.recipient = recipient


@dataclass
class NotificationResult:
    """
    Result of a notification send.

    Captures what was sent and to whom, for debugging and testing.
    """
    channel: Channel
    recipient: str
    subject: Optional[str]
    body: str
    timestamp: datetime = field(default_factory=utcnow)
    deferred: bool = False
    batch: Optional[EmailFrequency] = None
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        if self.channel == Channel.EMAIL:
            how = f"queued for {self.batch.value} digest" if self.deferred else "sent"
            return f"EMAIL {how} to {self.recipient}: {self.subject}"
        return f"{self.channel.value.upper()} to {self.recipient}: {self.body[:50]}"


class _MockChannel:
    """Shared bookkeeping for the mock channels."""

    channel: Channel

    def __init__(self, fail_rate: float = 0.0, history_limit: int = DEFAULT_HISTORY_LIMIT):
        """
        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
            history_limit: How many sent messages to remember.
        """
        self.fail_rate = fail_rate
        self.history_limit = history_limit
        self.sent_messages: deque[NotificationResult] = deque(maxlen=history_limit)

    def _maybe_fail(self, recipient: str) -> None:
        if self.fail_rate and random.random() < self.fail_rate:
            logger.error(f"[{self.channel.value.upper()} FAILED] To: {recipient}")
            raise ChannelError(self.channel, recipient, "simulated delivery failure")

    def get_sent_count(self) -> int:
        """Get the number of messages sent (for testing)."""
        return len(self.sent_messages)

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None


class EmailChannel(_MockChannel):
    """
    Mock email channel.

    Immediate emails are "sent" right away. Emails for users on an hourly,
    daily or weekly frequency are queued for that digest instead; building
    and sending the digest is not this channel's job.
    """

    channel = Channel.EMAIL

    def __init__(
        self,
        fail_rate: float = 0.0,
        from_addr: str = "noreply@urlshortener.example.com",
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        super().__init__(fail_rate, history_limit)
        self.from_addr = from_addr
        self.digest_queue: deque[NotificationResult] = deque(maxlen=history_limit)

    def send(self, to: str, subject: str, body: str) -> NotificationResult:
        self._maybe_fail(to)
        result = NotificationResult(channel=Channel.EMAIL, recipient=to, subject=subject, body=body)
        logger.info(f"[EMAIL] From: {self.from_addr} | To: {to} | Subject: {subject}")
        logger.debug(f"[EMAIL BODY] {body}")
        self.sent_messages.append(result)
        return result

    def defer(self, to: str, subject: str, body: str, frequency: EmailFrequency) -> NotificationResult:
        """Queue an email for the user's digest."""
        self._maybe_fail(to)
        result = NotificationResult(
            channel=Channel.EMAIL,
            recipient=to,
            subject=subject,
            body=body,
            deferred=True,
            batch=frequency,
        )
        logger.info(f"[EMAIL DEFERRED] To: {to} | Batch: {frequency.value} | Subject: {subject}")
        self.digest_queue.append(result)
        return result

    def clear_history(self):
        super().clear_history()
        self.digest_queue.clear()


class PushChannel(_MockChannel):
    """Mock push channel. One send fans out to every registered device token."""

    channel = Channel.PUSH

    def send(self, user_id: str, tokens: list[str], title: str, message: str) -> NotificationResult:
        self._maybe_fail(user_id)
        result = NotificationResult(
            channel=Channel.PUSH,
            recipient=user_id,
            subject=title,
            body=message,
            data={"tokens": list(tokens)},
        )
        logger.info(f"[PUSH] To: {user_id} ({len(tokens)} device(s)) | {title}")
        self.sent_messages.append(result)
        return result


class InAppChannel(_MockChannel):
    """Mock in-app channel. Stands in for the realtime socket to the web UI."""

    channel = Channel.IN_APP

    def send(self, user_id: str, title: str, message: str, data: Optional[dict] = None) -> NotificationResult:
        self._maybe_fail(user_id)
        result = NotificationResult(
            channel=Channel.IN_APP,
            recipient=user_id,
            subject=title,
            body=message,
            data=dict(data or {}),
        )
        logger.info(f"[IN-APP] To: {user_id} | {title}")
        self.sent_messages.append(result)
        return result


class NotificationChannels:
    """
    Facade for all notification channels.

    Fanout hands every delivery request to this object; tests inspect the
    individual channels afterwards.
    """

    def __init__(
        self,
        email_fail_rate: float = 0.0,
        push_fail_rate: float = 0.0,
        in_app_fail_rate: float = 0.0,
        email_from: str = "noreply@urlshortener.example.com",
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.email = EmailChannel(fail_rate=email_fail_rate, from_addr=email_from, history_limit=history_limit)
        self.push = PushChannel(fail_rate=push_fail_rate, history_limit=history_limit)
        self.in_app = InAppChannel(fail_rate=in_app_fail_rate, history_limit=history_limit)

    def get_all_sent_messages(self) -> list[NotificationResult]:
        """Everything delivered or queued, across all channels."""
        return [
            *self.email.sent_messages,
            *self.email.digest_queue,
            *self.push.sent_messages,
            *self.in_app.sent_messages,
        ]

    def get_total_sent_count(self) -> int:
        return len(self.get_all_sent_messages())

    def clear_all_history(self):
        self.email.clear_history()
        self.push.clear_history()
        self.in_app.clear_history()
