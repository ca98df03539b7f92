"""
Redirect service simulator.

Resolves short links and publishes url.redirect for every hit. Client
addresses are hashed before they leave this service.
"""

import hashlib
import logging
from typing import Optional

from event_driven.envelope import EventEnvelope, url_redirect
from event_driven.publisher import Publisher
from shared.models import utcnow

logger = logging.getLogger("redirect_service")


def _hash(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


class RedirectService:
    """
    Simulated redirect service that publishes an event per click.

    Example:
        service = RedirectService(publisher)
        service.record_redirect("abc123", "https://example.com", user_id="u1", ip="203.0.113.7")
    """

    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def record_redirect(
        self,
        short_code: str,
        original_url: Optional[str] = None,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
        country_code: Optional[str] = None,
    ) -> EventEnvelope:
        """
        Publish url.redirect for one click.

        Args:
            user_id: Owner of the short link, so consumers needn't look it up
            ip: Client address; only its hash is published
        """
        ip_hash = _hash(ip)
        visitor_hash = _hash(f"{ip}|{user_agent}") if ip else None
        event = url_redirect(
            short_code,
            original_url=original_url,
            user_id=user_id,
            visitor_hash=visitor_hash,
            timestamp=utcnow(),
            user_agent=user_agent,
            referer=referer,
            ip_hash=ip_hash,
            country_code=country_code,
        )
        logger.debug(f"Redirect {short_code} -> {original_url}")
        return self.publisher.publish(event)
