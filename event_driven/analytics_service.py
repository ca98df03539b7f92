"""
Analytics service.

Consumes url.created and url.redirect from its own queue, keeps click events
and daily aggregates per short code, and publishes url.milestone when a
link's running total reaches one of the configured thresholds.

Design decisions:
- Clicks are unique on the envelope id, so a redelivered redirect is counted
  once
- The milestone is published before the click is committed. If the process
  dies in between, the redelivered redirect publishes the same milestone
  again, and the notification side dedupes it by (short code, clicks). The
  opposite order could lose the milestone for good.
- A failed milestone publish fails the handler, and the consumer retries it
"""

import logging
from typing import Optional

from event_driven.consumer import Consumer
from event_driven.envelope import EventEnvelope, EventTypes, url_milestone
from event_driven.publisher import Publisher
from shared.config import Settings
from shared.data_store import AnalyticsStore
from shared.models import ClickEvent, detect_device_type, utcnow

logger = logging.getLogger("analytics_service")


class AnalyticsService:
    """
    Event-driven click analytics.

    Example:
        service = AnalyticsService(settings, publisher)
        consumer = Consumer(broker, settings.analytics_queue, settings)
        service.register(consumer)
    """

    def __init__(
        self,
        settings: Settings,
        publisher: Publisher,
        store: Optional[AnalyticsStore] = None,
    ):
        self.publisher = publisher
        self.store = store or AnalyticsStore()
        self.milestones = frozenset(settings.milestone_thresholds)

    def register(self, consumer: Consumer) -> None:
        consumer.register(EventTypes.URL_CREATED, self._handle_url_created)
        consumer.register(EventTypes.URL_REDIRECT, self._handle_url_redirect)
        logger.info(f"AnalyticsService registered on '{consumer.queue}'")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_url_created(self, event: EventEnvelope) -> None:
        """Record the short code's baseline: target, owner, creation time."""
        payload = event.payload
        self.store.register_url(
            payload.short_code,
            payload.original_url,
            payload.user_id,
            payload.created_at or event.produced_at,
        )
        logger.info(f"Tracking {payload.short_code} -> {payload.original_url}")

    def _handle_url_redirect(self, event: EventEnvelope) -> Optional[int]:
        """
        Count a click.

        Returns:
            The short code's new total, or None for a duplicate delivery
        """
        payload = event.payload
        if self.store.has_click(event.id):
            logger.debug(f"Skipping duplicate click {event}")
            return None

        click = ClickEvent(
            event_id=event.id,
            short_code=payload.short_code,
            original_url=payload.original_url,
            user_id=payload.user_id,
            visitor_hash=payload.visitor_hash,
            timestamp=payload.timestamp or event.produced_at or utcnow(),
            user_agent=payload.user_agent,
            referer=payload.referer,
            ip_hash=payload.ip_hash,
            country_code=payload.country_code,
            device_type=detect_device_type(payload.user_agent),
        )

        total = self.store.total_clicks(payload.short_code) + 1
        if total in self.milestones:
            self._publish_milestone(payload.short_code, payload.user_id, total)

        recorded = self.store.record_click(click)
        logger.debug(f"Click on {payload.short_code} ({click.device_type.value}), total={recorded}")
        return recorded

    def _publish_milestone(self, short_code: str, user_id: Optional[str], clicks: int) -> None:
        owner = user_id
        if not owner:
            tracked = self.store.get_url(short_code)
            owner = tracked.user_id if tracked else None
        if not owner:
            logger.info(f"{short_code} reached {clicks} clicks but has no owner to notify")
            return
        logger.info(f"{short_code} reached {clicks} clicks, publishing milestone")
        self.publisher.publish(url_milestone(owner, short_code, clicks))
