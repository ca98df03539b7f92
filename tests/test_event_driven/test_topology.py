"""
Tests for broker topology declaration.
"""

import pytest

from event_driven.broker import InMemoryBroker
from event_driven.topology import (
    analytics_queue,
    declare_all,
    declare_queue,
    exchange_for,
    notification_queue,
)
from shared.config import Settings
from shared.errors import BrokerError


class TestExchangeOwnership:
    """Each producing domain owns one exchange."""

    @pytest.mark.parametrize("event_type,exchange", [
        ("url.created", "url-events"),
        ("url.redirect", "url-events"),
        ("url.milestone", "url-events"),
        ("user.created", "user-events"),
        ("password.reset.requested", "user-events"),
        ("password.reset.completed", "user-events"),
    ])
    def test_exchange_for(self, settings: Settings, event_type, exchange):
        assert exchange_for(event_type, settings) == exchange

    def test_unowned_type(self, settings: Settings):
        with pytest.raises(ValueError):
            exchange_for("order.created", settings)


class TestDeclaration:
    """Tests for declaring queues and bindings."""

    def test_declare_all_is_idempotent(self, broker: InMemoryBroker, settings: Settings):
        """Several service instances declaring at startup don't conflict."""
        declare_all(broker, settings)
        declare_all(broker, settings)

        for name in ("notification-events", "notification-events.dead-letter",
                     "analytics-events", "analytics-events.dead-letter"):
            assert broker.has_queue(name)

    def test_dead_letter_queue_name(self, settings: Settings):
        assert notification_queue(settings).dead_letter_queue == "notification-events.dead-letter"

    def test_notification_bindings(self, declared_broker: InMemoryBroker, settings: Settings):
        """The notification queue gets url.created, url.milestone, user.created and password resets."""
        for exchange, key in [
            ("url-events", "url.created"),
            ("url-events", "url.redirect"),
            ("url-events", "url.milestone"),
            ("user-events", "user.created"),
            ("user-events", "password.reset.requested"),
            ("user-events", "password.reset.completed"),
        ]:
            declared_broker.publish(exchange, key, key.encode())

        received = [d.routing_key for d in declared_broker.peek(settings.notification_queue)]
        assert received == [
            "url.created",
            "url.milestone",
            "user.created",
            "password.reset.requested",
            "password.reset.completed",
        ]

    def test_analytics_bindings(self, declared_broker: InMemoryBroker, settings: Settings):
        """The analytics queue only gets url.created and url.redirect."""
        for key in ("url.created", "url.redirect", "url.milestone"):
            declared_broker.publish("url-events", key, b"{}")
        declared_broker.publish("user-events", "user.created", b"{}")

        received = [d.routing_key for d in declared_broker.peek(settings.analytics_queue)]
        assert received == ["url.created", "url.redirect"]

    def test_rejects_reach_service_dead_letter_queue(self, declared_broker: InMemoryBroker, settings: Settings):
        declared_broker.publish("url-events", "url.created", b"{}")
        declared_broker.reject(declared_broker.get(settings.analytics_queue))

        assert declared_broker.queue_depth("analytics-events.dead-letter") == 1
        assert declared_broker.queue_depth("notification-events.dead-letter") == 0

    def test_queue_spec_bindings(self, settings: Settings):
        keys = {b.routing_key for b in analytics_queue(settings).bindings}
        assert keys == {"url.created", "url.redirect"}

    def test_declare_queue_needs_exchanges(self, broker: InMemoryBroker, settings: Settings):
        """Binding before the exchanges exist fails loudly rather than silently."""
        with pytest.raises(BrokerError):
            declare_queue(broker, notification_queue(settings))
