"""
Publisher: durably emits events to the owning domain's exchange.

Guarantees:
- The event type is part of the taxonomy
- ``produced_at`` is stamped at publish time
- Messages are marked persistent and routed with routing key == type

Delivery is at-least-once. Publishing is a single attempt: on failure the
caller gets PublishError and decides whether to retry, queue locally or
surface the error. Nothing is buffered here and no state is kept.
"""

import logging
from typing import Callable, Optional

from event_driven.broker import Broker
from event_driven.envelope import EventEnvelope, EventTypes, encode
from event_driven.topology import exchange_for
from shared.config import Settings
from shared.errors import BrokerError, PublishError
from shared.models import utcnow

logger = logging.getLogger("publisher")


class Publisher:
    """
    Publishes EventEnvelopes for a producing service.

    Example:
        publisher = Publisher(broker, settings, source="url-shortener-service")
        publisher.publish(url_created("abc123", "https://example.com", user_id="u1"))
    """

    def __init__(
        self,
        broker: Broker,
        settings: Settings,
        source: Optional[str] = None,
        clock: Callable = utcnow,
    ):
        self.broker = broker
        self.settings = settings
        self.source = source
        self._clock = clock

    def publish(self, event: EventEnvelope) -> EventEnvelope:
        """
        Publish an event.

        Returns:
            The envelope as published (with produced_at and source stamped)

        Raises:
            PublishError: Unknown event type, or the broker could not take it
        """
        if event.type not in EventTypes.ALL:
            raise PublishError(f"Refusing to publish unknown event type {event.type!r}", event.type)

        stamped = event.model_copy(update={
            "produced_at": self._clock(),
            "source": event.source or self.source,
        })
        exchange = exchange_for(stamped.type, self.settings)

        try:
            # Redeclared every time so a broker that lost its topology gets it back
            self.broker.declare_exchange(exchange, "topic", durable=True)
            self.broker.publish(
                exchange,
                stamped.routing_key,
                encode(stamped),
                message_id=stamped.id,
                persistent=True,
            )
        except BrokerError as e:
            logger.error(f"Failed to publish {stamped}: {e}")
            raise PublishError(f"Failed to publish {stamped.type}: {e}", stamped.type) from e

        logger.info(f"Published {stamped} to '{exchange}'")
        return stamped

