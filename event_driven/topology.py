"""
Broker topology: which exchanges exist and which queues bind what.

Each producing domain owns one durable topic exchange. Each consuming service
owns one durable queue bound only to the routing keys it handles, plus a
dead-letter queue for messages it gave up on. Every instance of every service
declares the topology it needs at startup; declarations are idempotent so
concurrent startups are safe.
"""

import logging
from dataclasses import dataclass

from event_driven.broker import Broker
from event_driven.envelope import EventTypes
from shared.config import Settings

logger = logging.getLogger("topology")


@dataclass(frozen=True)
class Binding:
    exchange: str
    routing_key: str


@dataclass(frozen=True)
class QueueSpec:
    """A consuming service's queue, its bindings and its dead-letter routing."""
    name: str
    bindings: tuple[Binding, ...]
    dead_letter_exchange: str

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.name}.dead-letter"


def exchange_for(event_type: str, settings: Settings) -> str:
    """The exchange owned by the domain that produces ``event_type``."""
    if event_type.startswith("url."):
        return settings.url_events_exchange
    if event_type.startswith("user.") or event_type.startswith("password."):
        return settings.user_events_exchange
    raise ValueError(f"No exchange owns event type {event_type!r}")


def producer_exchanges(settings: Settings) -> tuple[str, ...]:
    return (settings.url_events_exchange, settings.user_events_exchange)


def notification_queue(settings: Settings) -> QueueSpec:
    """The notification service's queue."""
    return QueueSpec(
        name=settings.notification_queue,
        dead_letter_exchange=settings.dead_letter_exchange,
        bindings=(
            Binding(settings.url_events_exchange, EventTypes.URL_CREATED),
            Binding(settings.url_events_exchange, EventTypes.URL_MILESTONE),
            Binding(settings.user_events_exchange, EventTypes.USER_CREATED),
            Binding(settings.user_events_exchange, "password.reset.*"),
        ),
    )


def analytics_queue(settings: Settings) -> QueueSpec:
    """The analytics service's queue."""
    return QueueSpec(
        name=settings.analytics_queue,
        dead_letter_exchange=settings.dead_letter_exchange,
        bindings=(
            Binding(settings.url_events_exchange, EventTypes.URL_CREATED),
            Binding(settings.url_events_exchange, EventTypes.URL_REDIRECT),
        ),
    )


def declare_exchanges(broker: Broker, settings: Settings) -> None:
    """Declare the producer exchanges and the dead-letter exchange."""
    for exchange in producer_exchanges(settings):
        broker.declare_exchange(exchange, "topic", durable=True)
    broker.declare_exchange(settings.dead_letter_exchange, "direct", durable=True)


def declare_queue(broker: Broker, spec: QueueSpec) -> None:
    """Declare a consuming queue, its dead-letter queue and all bindings."""
    broker.declare_queue(spec.dead_letter_queue, durable=True)
    broker.bind_queue(spec.dead_letter_queue, spec.dead_letter_exchange, spec.name)

    broker.declare_queue(
        spec.name,
        durable=True,
        dead_letter_exchange=spec.dead_letter_exchange,
        dead_letter_routing_key=spec.name,
    )
    for binding in spec.bindings:
        broker.bind_queue(spec.name, binding.exchange, binding.routing_key)

    logger.info(
        f"Queue '{spec.name}' bound to "
        + ", ".join(f"{b.exchange}:{b.routing_key}" for b in spec.bindings)
    )


def declare_all(broker: Broker, settings: Settings) -> None:
    """Declare the whole system's topology (used by the CLI and the demo)."""
    declare_exchanges(broker, settings)
    declare_queue(broker, notification_queue(settings))
    declare_queue(broker, analytics_queue(settings))
