"""
Demonstration of the event integration layer, end to end, in one process.

Runs the producing services, the notification consumer and the analytics
consumer against the in-memory broker and prints what was delivered.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from event_driven.analytics_service import AnalyticsService
from event_driven.broker import InMemoryBroker
from event_driven.consumer import Consumer
from event_driven.envelope import encode
from event_driven.notification_service import NotificationService
from event_driven.publisher import Publisher
from event_driven.retention import RetentionSweeper
from event_driven.services.identity import IdentityService
from event_driven.services.redirect import RedirectService
from event_driven.services.url_shortener import UrlShortenerService
from event_driven.topology import declare_all
from shared.config import Settings
from shared.models import Category, ChannelSettings, EmailFrequency, PreferenceUpdate


@dataclass
class DemoSystem:
    """Everything the demo wires together, for inspection afterwards."""
    settings: Settings
    broker: InMemoryBroker
    notifications: NotificationService
    analytics: AnalyticsService
    notification_consumer: Consumer
    analytics_consumer: Consumer
    url_shortener: UrlShortenerService
    redirects: RedirectService
    identity: IdentityService

    def drain(self) -> None:
        """Run both consumers until no messages are left anywhere."""
        while True:
            handled = self.analytics_consumer.drain() + self.notification_consumer.drain()
            if not handled:
                return


def build_demo_system(settings: Optional[Settings] = None) -> DemoSystem:
    settings = settings or Settings()
    broker = InMemoryBroker()
    declare_all(broker, settings)

    notifications = NotificationService(settings)
    notification_consumer = Consumer(broker, settings.notification_queue, settings, name="notifications")
    notifications.register(notification_consumer)

    analytics = AnalyticsService(settings, Publisher(broker, settings, source="analytics-service"))
    analytics_consumer = Consumer(broker, settings.analytics_queue, settings, name="analytics")
    analytics.register(analytics_consumer)

    return DemoSystem(
        settings=settings,
        broker=broker,
        notifications=notifications,
        analytics=analytics,
        notification_consumer=notification_consumer,
        analytics_consumer=analytics_consumer,
        url_shortener=UrlShortenerService(Publisher(broker, settings, source="url-shortener-service")),
        redirects=RedirectService(Publisher(broker, settings, source="redirect-service")),
        identity=IdentityService(Publisher(broker, settings, source="identity-service")),
    )


def run_demo(clicks: int = 120) -> DemoSystem:
    """
    Walk through a user's life in the system.

    1. The identity service registers Alice (welcome notification)
    2. Alice opts into immediate email for milestones and registers a phone
    3. The shortener creates a link for her (in-app only, by default)
    4. The link is clicked past its first milestone (milestone notification)
    5. Alice resets her password (transactional email)
    6. The same url.created is delivered again (no new notification)
    """
    print("\n" + "=" * 70)
    print("EVENT-DRIVEN DEMO: URL shortener notifications and analytics")
    print("=" * 70 + "\n")

    system = build_demo_system()
    alice = "user-alice"

    system.identity.register_user("alice@example.com", name="Alice", user_id=alice)
    system.drain()

    system.notifications.preferences.update(alice, PreferenceUpdate(
        email_frequency=EmailFrequency.IMMEDIATE,
        category_settings={Category.MILESTONES: ChannelSettings(email=True, push=True)},
    ))
    system.notifications.devices.add_token(alice, "fcm-token-alice-phone", "mobile")

    created = system.url_shortener.create_url("https://example.com/launch-announcement", user_id=alice)
    short_code = created.payload.short_code
    system.drain()

    for i in range(clicks):
        system.redirects.record_redirect(
            short_code,
            original_url=created.payload.original_url,
            user_id=alice,
            ip=f"198.51.100.{i % 40}",
            user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile" if i % 3 else "Mozilla/5.0 (X11; Linux x86_64)",
            referer="https://news.example.org/item" if i % 2 else None,
            country_code="NL",
        )
    system.drain()

    reset = system.identity.request_password_reset(alice, "alice@example.com")
    system.identity.complete_password_reset(alice, reset.payload.reset_token, "alice@example.com")
    system.drain()

    # At-least-once delivery: the same envelope arrives a second time
    system.broker.publish(
        system.settings.url_events_exchange,
        created.routing_key,
        encode(created),
        message_id=created.id,
    )
    system.drain()

    print("\n" + "-" * 70)
    print(f"Notifications recorded for {alice}:")
    for record in reversed(system.notifications.records.list_for_user(alice)):
        flag = " (deferred)" if record.deferred else ""
        print(f"  [{record.category.value:<11}] {record.channel.value:<6} {record.title}{flag}")

    print(f"\nMessages handed to channels: {len(system.notifications.channels.get_all_sent_messages())}")
    for stat in system.analytics.store.get_stats(short_code):
        print(
            f"Clicks on {short_code} {stat.day}: total={stat.total_clicks} unique={stat.unique_visitors} "
            f"devices={stat.device_stats} referers={stat.referer_stats}"
        )

    sweeper = RetentionSweeper.for_stores(
        system.settings,
        notifications=system.notifications.records,
        analytics=system.analytics.store,
    )
    print(f"Retention sweep: {sweeper.sweep()}")
    print("-" * 70)
    return system


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )
    run_demo()
