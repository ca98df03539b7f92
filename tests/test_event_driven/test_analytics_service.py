"""
Tests for the analytics service: click counting and milestone publishing.
"""

from datetime import datetime, timezone

import pytest

from event_driven.analytics_service import AnalyticsService
from event_driven.broker import InMemoryBroker
from event_driven.consumer import Consumer, Outcome
from event_driven.envelope import EventTypes, decode, encode, url_created, url_redirect
from event_driven.publisher import Publisher
from event_driven.topology import declare_all
from shared.config import Settings
from shared.errors import BrokerError, PublishError
from shared.models import DeviceType


@pytest.fixture
def small_settings() -> Settings:
    """Low milestone thresholds so tests don't need hundreds of clicks."""
    return Settings(_env_file=None, milestone_thresholds=(3, 5))


@pytest.fixture
def analytics_broker(small_settings: Settings) -> InMemoryBroker:
    broker = InMemoryBroker()
    declare_all(broker, small_settings)
    return broker


@pytest.fixture
def service(analytics_broker: InMemoryBroker, small_settings: Settings) -> AnalyticsService:
    return AnalyticsService(small_settings, Publisher(analytics_broker, small_settings, source="analytics-service"))


@pytest.fixture
def consumer(analytics_broker: InMemoryBroker, small_settings: Settings, service: AnalyticsService) -> Consumer:
    consumer = Consumer(analytics_broker, small_settings.analytics_queue, small_settings, name="analytics")
    service.register(consumer)
    return consumer


@pytest.fixture
def producer(analytics_broker: InMemoryBroker, small_settings: Settings) -> Publisher:
    return Publisher(analytics_broker, small_settings, source="redirect-service")


def click(producer: Publisher, short_code="abc123", user_id="u1", **kwargs):
    return producer.publish(url_redirect(short_code, user_id=user_id, **kwargs))


def milestones_on(broker: InMemoryBroker, queue: str) -> list[tuple[str, int]]:
    events = [decode(d.body) for d in broker.peek(queue)]
    return [(e.payload.short_code, e.payload.clicks) for e in events if e.type == EventTypes.URL_MILESTONE]


class TestClicks:
    """Tests for recording redirects."""

    def test_click_recorded(self, producer: Publisher, consumer: Consumer, service: AnalyticsService):
        click(producer, user_agent="Mozilla/5.0 (iPhone) Mobile", referer="https://news.example.org/a",
              country_code="NL", visitor_hash="v1")

        assert consumer.drain() == [Outcome.ACKNOWLEDGED]

        assert service.store.total_clicks("abc123") == 1
        [stat] = service.store.get_stats("abc123")
        assert stat.total_clicks == 1
        assert stat.unique_visitors == 1
        assert stat.device_stats == {DeviceType.MOBILE.value: 1}
        assert stat.country_stats == {"NL": 1}
        assert stat.referer_stats == {"news.example.org": 1}

    def test_click_uses_event_timestamp(self, producer: Publisher, consumer: Consumer, service: AnalyticsService):
        at = datetime(2024, 5, 31, 23, 59, tzinfo=timezone.utc)
        click(producer, timestamp=at)
        consumer.drain()

        [stat] = service.store.get_stats("abc123")
        assert stat.day == at.date()

    def test_duplicate_delivery_counted_once(
        self, producer: Publisher, consumer: Consumer, service: AnalyticsService,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        event = click(producer)
        analytics_broker.publish(
            small_settings.url_events_exchange, event.routing_key, encode(event), message_id=event.id,
        )

        assert consumer.drain() == [Outcome.ACKNOWLEDGED, Outcome.ACKNOWLEDGED]
        assert service.store.total_clicks("abc123") == 1
        assert service.store.click_count() == 1

    def test_url_created_registers_baseline(self, producer: Publisher, consumer: Consumer, service: AnalyticsService):
        producer.publish(url_created("abc123", "https://example.com", user_id="u1"))
        consumer.drain()

        tracked = service.store.get_url("abc123")
        assert tracked.user_id == "u1"
        assert tracked.original_url == "https://example.com"
        assert tracked.total_clicks == 0


class TestMilestones:
    """Tests for milestone publishing."""

    def test_milestone_published_at_threshold(
        self, producer: Publisher, consumer: Consumer,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        """The third click crosses the first threshold; the milestone lands on the notification queue."""
        for _ in range(3):
            click(producer)
        consumer.drain()

        assert milestones_on(analytics_broker, small_settings.notification_queue) == [("abc123", 3)]

    def test_each_threshold_once(
        self, producer: Publisher, consumer: Consumer,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        for _ in range(7):
            click(producer)
        consumer.drain()

        assert milestones_on(analytics_broker, small_settings.notification_queue) == [("abc123", 3), ("abc123", 5)]

    def test_milestone_stamped_by_analytics(
        self, producer: Publisher, consumer: Consumer,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        for _ in range(3):
            click(producer)
        consumer.drain()

        [delivery] = analytics_broker.peek(small_settings.notification_queue)
        event = decode(delivery.body)
        assert event.source == "analytics-service"
        assert event.payload.user_id == "u1"
        assert event.produced_at is not None

    def test_owner_from_tracked_url(
        self, producer: Publisher, consumer: Consumer,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        """A redirect without an owner falls back to the owner seen on url.created."""
        producer.publish(url_created("abc123", "https://example.com", user_id="u7"))
        for _ in range(3):
            click(producer, user_id=None)
        consumer.drain()

        [delivery] = analytics_broker.peek(small_settings.notification_queue)
        assert decode(delivery.body).payload.user_id == "u7"

    def test_no_owner_no_milestone(
        self, producer: Publisher, consumer: Consumer, service: AnalyticsService,
        analytics_broker: InMemoryBroker, small_settings: Settings,
    ):
        for _ in range(3):
            click(producer, short_code="anon01", user_id=None)
        consumer.drain()

        assert service.store.total_clicks("anon01") == 3
        assert milestones_on(analytics_broker, small_settings.notification_queue) == []


class TestPublishFailure:
    """Tests for a milestone that can't be published."""

    class RefusingBroker(InMemoryBroker):
        """Refuses every url.milestone publish while ``refuse`` is set."""
        refuse = True

        def publish(self, exchange, routing_key, body, headers=None, message_id=None, persistent=True):
            if self.refuse and routing_key == EventTypes.URL_MILESTONE:
                raise BrokerError("connection reset")
            super().publish(exchange, routing_key, body, headers, message_id, persistent)

    def test_failed_publish_leaves_click_uncounted(self, small_settings: Settings):
        """The click isn't committed until its milestone is out, so the retry publishes it."""
        broker = self.RefusingBroker()
        declare_all(broker, small_settings)
        service = AnalyticsService(small_settings, Publisher(broker, small_settings))
        consumer = Consumer(broker, small_settings.analytics_queue, small_settings)
        service.register(consumer)
        producer = Publisher(broker, small_settings)

        for _ in range(2):
            producer.publish(url_redirect("abc123", user_id="u1"))
        consumer.drain()
        third = producer.publish(url_redirect("abc123", user_id="u1"))

        with pytest.raises(PublishError):
            service._handle_url_redirect(third)
        assert service.store.total_clicks("abc123") == 2

        broker.refuse = False
        assert consumer.drain() == [Outcome.ACKNOWLEDGED]
        assert service.store.total_clicks("abc123") == 3
        assert milestones_on(broker, small_settings.notification_queue) == [("abc123", 3)]
