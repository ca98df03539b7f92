"""
URL shortener service simulator.

Creates short links and publishes url.created. It doesn't know which
services consume the event, or that notifications exist at all.
"""

import logging
import secrets
import string
from typing import Optional

from event_driven.envelope import EventEnvelope, url_created
from event_driven.publisher import Publisher
from shared.models import utcnow

logger = logging.getLogger("url_shortener_service")

_ALPHABET = string.ascii_letters + string.digits


def generate_short_code(length: int = 7) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


class UrlShortenerService:
    """
    Simulated URL shortener that publishes events.

    Example:
        service = UrlShortenerService(publisher)
        service.create_url("https://example.com/a/long/path", user_id="u1")
    """

    def __init__(self, publisher: Publisher):
        self.publisher = publisher
        self.urls: dict[str, str] = {}

    def create_url(
        self,
        original_url: str,
        user_id: Optional[str] = None,
        short_code: Optional[str] = None,
    ) -> EventEnvelope:
        """
        Create a short link and publish url.created.

        Raises:
            ValueError: The requested short code is taken
            PublishError: The event could not be published
        """
        code = short_code or generate_short_code()
        if code in self.urls:
            raise ValueError(f"Short code already in use: {code}")
        self.urls[code] = original_url
        logger.info(f"Created {code} -> {original_url} (user={user_id or 'anonymous'})")
        return self.publisher.publish(url_created(code, original_url, user_id=user_id, created_at=utcnow()))
