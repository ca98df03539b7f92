"""
Event integration layer for the URL shortener.

This package implements the event-driven side of the system:
- Producing services publish envelopes to their domain's topic exchange
- Each consuming service reads its own durable queue through a Consumer
- The notification service fans events out to the user's enabled channels
- The analytics service counts clicks and publishes click milestones
"""

from event_driven.broker import Broker, InMemoryBroker
from event_driven.consumer import Consumer, Outcome
from event_driven.envelope import EventEnvelope, EventTypes, decode, encode
from event_driven.publisher import Publisher

__all__ = [
    "Broker",
    "InMemoryBroker",
    "Consumer",
    "Outcome",
    "EventEnvelope",
    "EventTypes",
    "decode",
    "encode",
    "Publisher",
]
