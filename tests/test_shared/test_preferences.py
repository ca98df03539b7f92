"""
Tests for the preference store and device-token registry.

These tests verify get-or-create under concurrency, partial updates,
channel resolution precedence and device-token upserts.
"""

import threading
from datetime import datetime, timedelta, timezone

from shared.config import Settings
from shared.data_store import PreferenceRepository
from shared.models import Category, Channel, ChannelSettings, EmailFrequency, Preference, PreferenceUpdate
from shared.preferences import DeviceTokenRegistry, PreferenceStore


class TestGetOrCreate:
    """Tests for PreferenceStore.get_or_create."""

    def test_creates_with_system_defaults(self, preferences: PreferenceStore):
        """A first access creates email off, push off, in-app on, daily digest."""
        pref = preferences.get_or_create("u1")
        assert pref.channels == ChannelSettings(email=False, push=False, in_app=True)
        assert pref.email_frequency == EmailFrequency.DAILY
        assert pref.category_settings == {}

    def test_returns_existing(self, preferences: PreferenceStore, repository: PreferenceRepository):
        first = preferences.get_or_create("u1")
        second = preferences.get_or_create("u1")
        assert first.created_at == second.created_at
        assert repository.count() == 1

    def test_fills_in_missing_email(self, preferences: PreferenceStore):
        """An address supplied later is stored if the record has none."""
        preferences.get_or_create("u1")
        pref = preferences.get_or_create("u1", "u1@example.com")
        assert pref.email_address == "u1@example.com"

    def test_does_not_overwrite_email(self, preferences: PreferenceStore):
        preferences.get_or_create("u1", "first@example.com")
        pref = preferences.get_or_create("u1", "second@example.com")
        assert pref.email_address == "first@example.com"

    def test_defaults_come_from_settings(self):
        """The store owns the defaults, and they come from configuration."""
        settings = Settings(_env_file=None, default_email=True, default_email_frequency=EmailFrequency.WEEKLY)
        pref = PreferenceStore(settings).get_or_create("u1")
        assert pref.channels.email is True
        assert pref.email_frequency == EmailFrequency.WEEKLY

    def test_lost_insert_race_fetches_winner(self, settings: Settings):
        """When the insert hits the unique constraint, the existing record is returned."""

        class RacingRepository(PreferenceRepository):
            """Another instance creates the record between our find and insert."""

            def insert(self, preference: Preference) -> Preference:
                super().insert(Preference(user_id=preference.user_id, email_address="winner@example.com"))
                return super().insert(preference)

        repository = RacingRepository()
        pref = PreferenceStore(settings, repository).get_or_create("u1")
        assert pref.email_address == "winner@example.com"
        assert repository.count() == 1

    def test_concurrent_first_access_creates_one_record(self, settings: Settings):
        """Many threads asking for a new user at once yield exactly one record."""
        inserts = []

        class CountingRepository(PreferenceRepository):
            def insert(self, preference: Preference) -> Preference:
                stored = super().insert(preference)
                inserts.append(stored)
                return stored

        repository = CountingRepository()
        store = PreferenceStore(settings, repository)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(store.get_or_create("new-user"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert repository.count() == 1
        assert len(inserts) == 1
        assert len(results) == 8
        assert {r.created_at for r in results} == {inserts[0].created_at}


class TestUpdate:
    """Tests for PreferenceStore.update (partial merge)."""

    def test_unspecified_fields_unchanged(self, preferences: PreferenceStore):
        preferences.get_or_create("u1", "u1@example.com")
        pref = preferences.update("u1", PreferenceUpdate(email_frequency=EmailFrequency.IMMEDIATE))
        assert pref.email_frequency == EmailFrequency.IMMEDIATE
        assert pref.email_address == "u1@example.com"
        assert pref.channels.in_app is True

    def test_root_channels_merge_per_flag(self, preferences: PreferenceStore):
        pref = preferences.update("u1", PreferenceUpdate(channels=ChannelSettings(email=True)))
        assert pref.channels == ChannelSettings(email=True, push=False, in_app=True)

    def test_category_settings_merge_per_category(self, preferences: PreferenceStore):
        preferences.update("u1", PreferenceUpdate(
            category_settings={Category.URL_CREATION: ChannelSettings(email=False)},
        ))
        pref = preferences.update("u1", PreferenceUpdate(
            category_settings={
                Category.URL_CREATION: ChannelSettings(push=True),
                Category.MILESTONES: ChannelSettings(email=True),
            },
        ))
        assert pref.category_settings[Category.URL_CREATION] == ChannelSettings(email=False, push=True)
        assert pref.category_settings[Category.MILESTONES] == ChannelSettings(email=True)

    def test_update_creates_missing_preference(self, preferences: PreferenceStore):
        pref = preferences.update("fresh", PreferenceUpdate(email_address="fresh@example.com"))
        assert pref.email_address == "fresh@example.com"

    def test_update_bumps_updated_at(self, settings: Settings):
        times = iter([
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 1, 2, tzinfo=timezone.utc),
        ])
        store = PreferenceStore(settings, clock=lambda: next(times))
        created = store.get_or_create("u1")
        updated = store.update("u1", PreferenceUpdate(email_frequency=EmailFrequency.HOURLY))
        assert updated.updated_at - created.created_at == timedelta(days=1)


class TestResolveChannels:
    """Tests for channel resolution precedence."""

    def test_defaults_only(self, preferences: PreferenceStore):
        """With nothing set, the system defaults decide: in-app only."""
        pref = Preference(user_id="u1")
        assert preferences.resolve_channels(pref, Category.URL_CREATION) == {Channel.IN_APP}

    def test_category_override_wins(self, preferences: PreferenceStore):
        """Category {email: false} beats root {email: true}."""
        pref = Preference(
            user_id="u1",
            channels=ChannelSettings(email=True, push=False, in_app=True),
            category_settings={Category.URL_CREATION: ChannelSettings(email=False)},
        )
        enabled = preferences.resolve_channels(pref, Category.URL_CREATION)
        assert Channel.EMAIL not in enabled
        assert enabled == {Channel.IN_APP}

    def test_unset_category_falls_back_to_root(self, preferences: PreferenceStore):
        pref = Preference(
            user_id="u1",
            channels=ChannelSettings(email=True, push=True, in_app=False),
            category_settings={Category.URL_CREATION: ChannelSettings(email=False)},
        )
        assert preferences.resolve_channels(pref, Category.MILESTONES) == {Channel.EMAIL, Channel.PUSH}

    def test_category_can_enable_what_root_disables(self, preferences: PreferenceStore):
        pref = Preference(
            user_id="u1",
            channels=ChannelSettings(email=False),
            category_settings={Category.MILESTONES: ChannelSettings(email=True)},
        )
        assert Channel.EMAIL in preferences.resolve_channels(pref, Category.MILESTONES)


class TestDeviceTokenRegistry:
    """Tests for device-token upsert and removal."""

    def test_add_token(self, devices: DeviceTokenRegistry):
        pref = devices.add_token("u1", "t1", "phoneA")
        assert [(t.token, t.device) for t in pref.device_tokens] == [("t1", "phoneA")]

    def test_readding_token_replaces_entry(self, devices: DeviceTokenRegistry):
        """addToken(t1, phoneA) then addToken(t1, phoneB) leaves one t1 on phoneB."""
        devices.add_token("u1", "t1", "phoneA")
        pref = devices.add_token("u1", "t1", "phoneB")
        assert [(t.token, t.device) for t in pref.device_tokens] == [("t1", "phoneB")]

    def test_readding_refreshes_last_seen(self, preferences: PreferenceStore):
        times = iter(datetime(2024, 1, d, tzinfo=timezone.utc) for d in range(1, 10))
        registry = DeviceTokenRegistry(preferences, clock=lambda: next(times))
        registry.add_token("u1", "t1", "phoneA")
        pref = registry.add_token("u1", "t1", "phoneA")
        assert pref.device_tokens[0].last_seen_at == datetime(2024, 1, 2, tzinfo=timezone.utc)

    def test_tokens_are_scoped_to_user(self, devices: DeviceTokenRegistry, preferences: PreferenceStore):
        devices.add_token("u1", "shared", "phone")
        devices.add_token("u2", "shared", "tablet")
        assert preferences.get("u1").token_values() == ["shared"]
        assert preferences.get("u2").token_values() == ["shared"]

    def test_default_device_label(self, devices: DeviceTokenRegistry):
        pref = devices.add_token("u1", "t1")
        assert pref.device_tokens[0].device == "unknown"

    def test_remove_token(self, devices: DeviceTokenRegistry):
        devices.add_token("u1", "t1", "phone")
        devices.add_token("u1", "t2", "tablet")
        pref = devices.remove_token("u1", "t1")
        assert pref.token_values() == ["t2"]

    def test_remove_missing_token_is_noop(self, devices: DeviceTokenRegistry):
        """Removing a token that isn't there is not an error."""
        devices.add_token("u1", "t1", "phone")
        pref = devices.remove_token("u1", "nope")
        assert pref.token_values() == ["t1"]
        assert devices.remove_token("u1", "nope").token_values() == ["t1"]
