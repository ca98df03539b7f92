"""
Shared pytest fixtures for the event integration layer tests.

Every fixture builds fresh in-memory state so tests don't interfere with
each other. Nothing here talks to a real broker.
"""

from datetime import datetime, timezone

import pytest

from event_driven.broker import InMemoryBroker
from event_driven.consumer import Consumer
from event_driven.notification_service import NotificationService
from event_driven.publisher import Publisher
from event_driven.topology import declare_all
from shared.channels import EmailChannel, InAppChannel, NotificationChannels, PushChannel
from shared.config import Settings
from shared.data_store import AnalyticsStore, NotificationRecordStore, PreferenceRepository
from shared.preferences import DeviceTokenRegistry, PreferenceStore


@pytest.fixture
def settings() -> Settings:
    """Default settings, unaffected by the environment or a local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def now() -> datetime:
    """A fixed 'current time' for time-dependent tests."""
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Broker Fixtures
# =============================================================================

@pytest.fixture
def broker() -> InMemoryBroker:
    """Fresh in-memory broker with no topology."""
    return InMemoryBroker()


@pytest.fixture
def declared_broker(broker: InMemoryBroker, settings: Settings) -> InMemoryBroker:
    """In-memory broker with the full system topology declared."""
    declare_all(broker, settings)
    return broker


@pytest.fixture
def publisher(declared_broker: InMemoryBroker, settings: Settings) -> Publisher:
    return Publisher(declared_broker, settings, source="test-service")


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def repository() -> PreferenceRepository:
    return PreferenceRepository()


@pytest.fixture
def preferences(settings: Settings, repository: PreferenceRepository) -> PreferenceStore:
    """Fresh PreferenceStore with the system defaults."""
    return PreferenceStore(settings, repository)


@pytest.fixture
def devices(preferences: PreferenceStore) -> DeviceTokenRegistry:
    return DeviceTokenRegistry(preferences)


@pytest.fixture
def records() -> NotificationRecordStore:
    return NotificationRecordStore()


@pytest.fixture
def analytics_store() -> AnalyticsStore:
    return AnalyticsStore()


# =============================================================================
# Channel Fixtures
# =============================================================================

@pytest.fixture
def email_channel() -> EmailChannel:
    """Fresh EmailChannel for each test."""
    return EmailChannel(fail_rate=0.0)


@pytest.fixture
def push_channel() -> PushChannel:
    return PushChannel(fail_rate=0.0)


@pytest.fixture
def in_app_channel() -> InAppChannel:
    return InAppChannel(fail_rate=0.0)


@pytest.fixture
def channels() -> NotificationChannels:
    """Fresh NotificationChannels facade for each test."""
    return NotificationChannels()


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def notification_service(
    settings: Settings,
    preferences: PreferenceStore,
    records: NotificationRecordStore,
    channels: NotificationChannels,
) -> NotificationService:
    return NotificationService(settings, preferences=preferences, records=records, channels=channels)


@pytest.fixture
def notification_consumer(
    declared_broker: InMemoryBroker,
    settings: Settings,
    notification_service: NotificationService,
) -> Consumer:
    """Consumer on the notification queue with the notification handlers registered."""
    consumer = Consumer(declared_broker, settings.notification_queue, settings, name="notifications")
    notification_service.register(consumer)
    return consumer
