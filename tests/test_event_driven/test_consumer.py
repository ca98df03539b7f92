"""
Tests for the Consumer / dispatcher.

These tests verify each path of the per-delivery state machine, the bounded
retry policy, partitioned concurrency and graceful shutdown.
"""

import threading
import time

import pytest

from event_driven.broker import InMemoryBroker
from event_driven.consumer import Consumer, Outcome
from event_driven.envelope import EventEnvelope, EventTypes, encode, url_created, url_redirect, user_created
from event_driven.publisher import Publisher
from shared.config import Settings
from shared.errors import HandlerError


@pytest.fixture
def consumer(declared_broker: InMemoryBroker, settings: Settings) -> Consumer:
    return Consumer(declared_broker, settings.notification_queue, settings)


class TestRegistration:
    """Tests for handler registration."""

    def test_register_unknown_type(self, consumer: Consumer):
        with pytest.raises(ValueError):
            consumer.register("url.deleted", lambda e: None)

    def test_handles(self, consumer: Consumer):
        consumer.register(EventTypes.URL_CREATED, lambda e: None)
        assert consumer.handles(EventTypes.URL_CREATED)
        assert not consumer.handles(EventTypes.USER_CREATED)


class TestStateMachine:
    """Tests for the received -> decoding -> handling -> settled paths."""

    def test_success_acknowledges(self, consumer: Consumer, publisher: Publisher, declared_broker, settings):
        handled = []
        consumer.register(EventTypes.URL_CREATED, handled.append)
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain() == [Outcome.ACKNOWLEDGED]
        assert len(handled) == 1
        assert declared_broker.unacked_count(settings.notification_queue) == 0
        assert declared_broker.queue_depth(settings.notification_queue) == 0

    def test_malformed_message_rejected_without_retry(self, consumer: Consumer, declared_broker, settings, caplog):
        """A body that can't be decoded goes straight to the dead-letter queue."""
        handled = []
        consumer.register(EventTypes.URL_CREATED, handled.append)
        declared_broker.publish("url-events", "url.created", b"{not json", message_id="bad-1")

        with caplog.at_level("ERROR", logger="consumer"):
            outcomes = consumer.drain()

        assert outcomes == [Outcome.REJECTED]
        assert handled == []
        assert declared_broker.queue_depth("notification-events.dead-letter") == 1
        assert "bad-1" in caplog.text
        assert "url.created" in caplog.text

    def test_unknown_type_rejected(self, consumer: Consumer, declared_broker):
        declared_broker.publish("url-events", "url.created", b'{"type": "url.deleted", "payload": {}}')

        assert consumer.drain() == [Outcome.REJECTED]
        assert declared_broker.queue_depth("notification-events.dead-letter") == 1

    def test_consumer_survives_bad_message(self, consumer: Consumer, publisher: Publisher, declared_broker):
        """A malformed message doesn't stop the messages behind it."""
        handled = []
        consumer.register(EventTypes.URL_CREATED, handled.append)
        declared_broker.publish("url-events", "url.created", b"garbage")
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain() == [Outcome.REJECTED, Outcome.ACKNOWLEDGED]
        assert len(handled) == 1

    def test_non_string_type_rejected(self, consumer: Consumer, publisher: Publisher, declared_broker):
        """A type tag that isn't a string is a malformed envelope, not a crash."""
        handled = []
        consumer.register(EventTypes.URL_CREATED, handled.append)
        declared_broker.publish("url-events", "url.created", b'{"type": ["url.created"], "payload": {}}')
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain() == [Outcome.REJECTED, Outcome.ACKNOWLEDGED]
        assert len(handled) == 1
        assert declared_broker.queue_depth("notification-events.dead-letter") == 1

    def test_no_handler_rejected(self, consumer: Consumer, publisher: Publisher, declared_broker):
        """A decodable event nobody handles is rejected, not silently acknowledged."""
        publisher.publish(user_created("u1"))

        assert consumer.drain() == [Outcome.REJECTED]
        assert declared_broker.queue_depth("notification-events.dead-letter") == 1


class TestRetries:
    """Tests for bounded retry and dead-lettering."""

    def test_transient_failure_retried_then_acknowledged(self, consumer: Consumer, publisher: Publisher):
        calls = []

        def flaky(event: EventEnvelope) -> None:
            calls.append(event.id)
            if len(calls) == 1:
                raise HandlerError("preference store unreachable")

        consumer.register(EventTypes.URL_CREATED, flaky)
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain() == [Outcome.RETRIED, Outcome.ACKNOWLEDGED]
        assert len(set(calls)) == 1

    def test_persistent_failure_dead_lettered(self, consumer: Consumer, publisher: Publisher, declared_broker):
        """After max_delivery_attempts the message goes to the dead-letter queue."""
        attempts = []

        def broken(event: EventEnvelope) -> None:
            attempts.append(1)
            raise HandlerError("still down")

        consumer.register(EventTypes.URL_CREATED, broken)
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        outcomes = consumer.drain()

        assert outcomes == [Outcome.RETRIED, Outcome.RETRIED, Outcome.DEAD_LETTERED]
        assert len(attempts) == 3
        [dead] = declared_broker.peek("notification-events.dead-letter")
        assert dead.headers["x-attempts"] == 2

    def test_unexpected_exception_is_retryable(self, consumer: Consumer, publisher: Publisher):
        def crashes(event: EventEnvelope) -> None:
            raise RuntimeError("boom")

        consumer.register(EventTypes.URL_CREATED, crashes)
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain(limit=1) == [Outcome.RETRIED]

    def test_retry_limit_from_settings(self, declared_broker, publisher: Publisher):
        settings = Settings(_env_file=None, max_delivery_attempts=1)
        consumer = Consumer(declared_broker, settings.notification_queue, settings)
        def broken(event: EventEnvelope) -> None:
            raise HandlerError("down")

        consumer.register(EventTypes.URL_CREATED, broken)
        publisher.publish(url_created("abc123", "x", user_id="u1"))

        assert consumer.drain() == [Outcome.DEAD_LETTERED]


class TestConcurrentConsumption:
    """Tests for the long-running, partitioned consume loop."""

    @pytest.fixture
    def fast_settings(self) -> Settings:
        return Settings(
            _env_file=None,
            consumer_workers=4,
            prefetch_count=8,
            poll_interval_seconds=0.01,
            shutdown_timeout_seconds=5.0,
        )

    def test_same_partition_same_worker(self, declared_broker, fast_settings: Settings):
        consumer = Consumer(declared_broker, fast_settings.analytics_queue, fast_settings)
        a = url_redirect("abc123", user_id="u1")
        b = url_redirect("zzz999", user_id="u1")
        assert consumer.partition_for(a) == consumer.partition_for(b)

    def test_events_for_one_user_never_overlap(self, declared_broker, fast_settings: Settings):
        """Handlers for the same user run one at a time, in order."""
        consumer = Consumer(declared_broker, fast_settings.analytics_queue, fast_settings)
        publisher = Publisher(declared_broker, fast_settings)
        active = {"u1": 0, "u2": 0}
        overlap = []
        seen = {"u1": [], "u2": []}
        lock = threading.Lock()

        def handler(event: EventEnvelope) -> None:
            user = event.payload.user_id
            with lock:
                active[user] += 1
                if active[user] > 1:
                    overlap.append(user)
            time.sleep(0.005)
            seen[user].append(event.payload.short_code)
            with lock:
                active[user] -= 1

        consumer.register(EventTypes.URL_REDIRECT, handler)
        for i in range(10):
            publisher.publish(url_redirect(f"u1-{i}", user_id="u1"))
            publisher.publish(url_redirect(f"u2-{i}", user_id="u2"))

        consumer.start()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and len(seen["u1"]) + len(seen["u2"]) < 20:
            time.sleep(0.01)
        assert consumer.stop(timeout=5)

        assert overlap == []
        assert seen["u1"] == [f"u1-{i}" for i in range(10)]
        assert seen["u2"] == [f"u2-{i}" for i in range(10)]

    def test_shutdown_waits_for_in_flight(self, declared_broker, fast_settings: Settings):
        """Stopping lets a running handler finish and acknowledge."""
        consumer = Consumer(declared_broker, fast_settings.analytics_queue, fast_settings)
        started = threading.Event()
        finished = []

        def slow(event: EventEnvelope) -> None:
            started.set()
            time.sleep(0.2)
            finished.append(event.id)

        consumer.register(EventTypes.URL_REDIRECT, slow)
        Publisher(declared_broker, fast_settings).publish(url_redirect("abc123", user_id="u1"))

        consumer.start()
        assert started.wait(timeout=5)
        assert consumer.stop(timeout=5)

        assert len(finished) == 1
        assert declared_broker.queue_depth(fast_settings.analytics_queue) == 0
        assert declared_broker.unacked_count(fast_settings.analytics_queue) == 0

    def test_unfinished_work_returned_on_shutdown(self, declared_broker):
        """Deliveries not handled before the shutdown timeout go back to the queue."""
        settings = Settings(
            _env_file=None,
            consumer_workers=1,
            prefetch_count=4,
            poll_interval_seconds=0.01,
            shutdown_timeout_seconds=0.05,
        )
        consumer = Consumer(declared_broker, settings.analytics_queue, settings)
        release = threading.Event()
        started = threading.Event()

        def blocked(event: EventEnvelope) -> None:
            started.set()
            release.wait(timeout=5)

        consumer.register(EventTypes.URL_REDIRECT, blocked)
        publisher = Publisher(declared_broker, settings)
        for i in range(3):
            publisher.publish(url_redirect(f"code-{i}", user_id="u1"))

        consumer.start()
        assert started.wait(timeout=5)
        time.sleep(0.05)
        assert consumer.stop(timeout=5)

        # Nothing was acknowledged; everything is back on the queue for redelivery
        assert declared_broker.queue_depth(settings.analytics_queue) == 3
        assert declared_broker.unacked_count(settings.analytics_queue) == 0
        release.set()

    def test_stop_without_start(self, consumer: Consumer):
        assert consumer.stop(timeout=0.1) is True
        assert consumer.running is False

    def test_bad_messages_dont_stop_the_loop(self, declared_broker, fast_settings: Settings):
        consumer = Consumer(declared_broker, fast_settings.analytics_queue, fast_settings)
        handled = []
        consumer.register(EventTypes.URL_REDIRECT, handled.append)
        declared_broker.publish("url-events", "url.redirect", b"garbage")
        declared_broker.publish("url-events", "url.redirect", encode(url_redirect("abc123")))

        consumer.start()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not handled:
            time.sleep(0.01)
        consumer.stop(timeout=5)

        assert len(handled) == 1
        assert declared_broker.queue_depth("analytics-events.dead-letter") == 1

    def test_non_string_type_doesnt_kill_the_loop(self, declared_broker, fast_settings: Settings):
        consumer = Consumer(declared_broker, fast_settings.analytics_queue, fast_settings)
        handled = []
        consumer.register(EventTypes.URL_REDIRECT, handled.append)
        declared_broker.publish("url-events", "url.redirect", b'{"type": {"x": 1}, "payload": {}}')
        declared_broker.publish("url-events", "url.redirect", encode(url_redirect("abc123")))

        consumer.start()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not handled:
            time.sleep(0.01)

        assert consumer.running
        assert consumer.stop(timeout=5)
        assert len(handled) == 1
        assert declared_broker.queue_depth("analytics-events.dead-letter") == 1
        assert declared_broker.unacked_count(fast_settings.analytics_queue) == 0
