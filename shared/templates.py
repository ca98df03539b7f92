"""
Notification message templates.

This module provides templates for all notification types. Templates support
variable substitution using Python's string formatting.

Design decisions:
- Templates are stored as simple strings with {variable} placeholders
- Each template has a short title/message pair (used for push and in-app)
  and a longer email variant
- Missing variables render as an empty string rather than failing a delivery
"""

from dataclasses import dataclass
from enum import Enum
from string import Formatter
from typing import Any


class NotificationType(str, Enum):
    """
    Supported notification types.

    Each type corresponds to a domain event that triggers a notification.
    """
    URL_CREATED = "url_created"
    MILESTONE_REACHED = "milestone_reached"
    WELCOME = "welcome"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"


class _LenientFormatter(Formatter):
    def get_value(self, key, args, kwargs):
        if isinstance(key, str):
            value = kwargs.get(key)
            return "" if value is None else value
        return super().get_value(key, args, kwargs)


_formatter = _LenientFormatter()


def _fmt(template: str, values: dict[str, Any]) -> str:
    return _formatter.vformat(template, (), values)


@dataclass(frozen=True)
class NotificationTemplate:
    """
    A notification template with short and email variants.

    The short variant (title + message) is what push and in-app show.
    """
    notification_type: NotificationType
    title: str
    message: str
    email_subject: str
    email_body: str

    def render_short(self, **kwargs) -> tuple[str, str]:
        """Returns (title, message)."""
        return _fmt(self.title, kwargs), _fmt(self.message, kwargs)

    def render_email(self, **kwargs) -> tuple[str, str]:
        """Returns (subject, body)."""
        return _fmt(self.email_subject, kwargs), _fmt(self.email_body, kwargs)


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[NotificationType, NotificationTemplate] = {

    NotificationType.URL_CREATED: NotificationTemplate(
        notification_type=NotificationType.URL_CREATED,
        title="URL Created Successfully",
        message="Your shortened URL {short_code} has been created successfully.",
        email_subject="Your short link {short_code} is ready",
        email_body="""Hi,

Your shortened URL {short_code} has been created successfully.

It points to: {original_url}

Thanks for using URL Shortener!
""",
    ),

    NotificationType.MILESTONE_REACHED: NotificationTemplate(
        notification_type=NotificationType.MILESTONE_REACHED,
        title="Click Milestone Reached",
        message="Your shortened URL {short_code} has reached {clicks} clicks!",
        email_subject="{short_code} just passed {clicks} clicks",
        email_body="""Hi,

Good news! Your shortened URL {short_code} has reached {clicks} clicks.

Keep sharing!
""",
    ),

    NotificationType.WELCOME: NotificationTemplate(
        notification_type=NotificationType.WELCOME,
        title="Welcome to URL Shortener!",
        message="Hello {name}! Welcome to URL Shortener. Start creating short URLs to share with others.",
        email_subject="Welcome to URL Shortener",
        email_body="""Hello {name},

Welcome to URL Shortener! Start creating short URLs to share with others.
""",
    ),

    NotificationType.PASSWORD_RESET_REQUESTED: NotificationTemplate(
        notification_type=NotificationType.PASSWORD_RESET_REQUESTED,
        title="Password reset requested",
        message="A password reset was requested for your account.",
        email_subject="Reset your password",
        email_body="""Hi,

We received a request to reset your password. Use this code to choose a new one:

    {reset_token}

The code expires at {expires_at}. If you didn't ask for this, you can ignore this email.
""",
    ),

    NotificationType.PASSWORD_RESET_COMPLETED: NotificationTemplate(
        notification_type=NotificationType.PASSWORD_RESET_COMPLETED,
        title="Password changed",
        message="Your password was changed. If this wasn't you, contact support right away.",
        email_subject="Your password was changed",
        email_body="""Hi,

Your password was just changed. If this wasn't you, contact support right away.
""",
    ),
}


def get_template(notification_type: NotificationType) -> NotificationTemplate:
    """
    Get the template for a notification type.

    Raises:
        KeyError: If no template exists for the type
    """
    return TEMPLATES[notification_type]
