"""
Notification preferences and push device tokens.

PreferenceStore is the single owner of preference defaults: producing
services never embed default policy, and handlers never write preference
fields directly. Every mutation goes through ``PreferenceStore.modify`` which
serializes writers per user.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from shared.config import Settings
from shared.data_store import PreferenceRepository
from shared.errors import PreferenceConflict
from shared.models import (
    Category,
    Channel,
    ChannelSettings,
    DeviceToken,
    Preference,
    PreferenceUpdate,
    utcnow,
)

logger = logging.getLogger("preferences")


class _UserLocks:
    """One lock per user id, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
            self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[user_id] -= 1
                if self._waiters[user_id] == 0:
                    del self._waiters[user_id]
                    del self._locks[user_id]


class PreferenceStore:
    """
    Per-user notification preferences with get-or-create semantics.

    Example:
        store = PreferenceStore(settings)
        pref = store.get_or_create("u1", "u1@example.com")
        store.resolve_channels(pref, Category.URL_CREATION)  # {Channel.IN_APP}
    """

    def __init__(
        self,
        settings: Settings,
        repository: Optional[PreferenceRepository] = None,
        clock: Callable = utcnow,
    ):
        self.repository = repository or PreferenceRepository()
        self.defaults = ChannelSettings(
            email=settings.default_email,
            push=settings.default_push,
            in_app=settings.default_in_app,
        )
        self.default_email_frequency = settings.default_email_frequency
        self._clock = clock
        self._locks = _UserLocks()

    def new_default(self, user_id: str, email_address: Optional[str] = None) -> Preference:
        """Build (but don't store) a preference carrying the system defaults."""
        now = self._clock()
        return Preference(
            user_id=user_id,
            email_address=email_address,
            channels=self.defaults.model_copy(),
            email_frequency=self.default_email_frequency,
            created_at=now,
            updated_at=now,
        )

    def get(self, user_id: str) -> Optional[Preference]:
        return self.repository.find(user_id)

    def get_or_create(self, user_id: str, email_address: Optional[str] = None) -> Preference:
        """
        Return the user's preference, creating it with defaults on first access.

        Concurrent first access is settled by the repository's unique
        constraint: the loser of the insert race gets PreferenceConflict and
        fetches the winner's record. An email address supplied for a record
        that has none yet is filled in.
        """
        existing = self.repository.find(user_id)
        if existing is None:
            try:
                existing = self.repository.insert(self.new_default(user_id, email_address))
                logger.info(f"Created default notification preferences for user {user_id}")
            except PreferenceConflict:
                logger.debug(f"Lost create race for user {user_id}, fetching existing record")
                existing = self.repository.find(user_id)

        if email_address and not existing.email_address:
            return self.modify(user_id, lambda p: p.model_copy(update={"email_address": email_address}))
        return existing

    def modify(self, user_id: str, change: Callable[[Preference], Preference]) -> Preference:
        """Apply ``change`` to the user's current preference under the user's lock."""
        with self._locks.hold(user_id):
            current = self.repository.find(user_id)
            if current is None:
                current = self.get_or_create(user_id)
            updated = change(current).model_copy(update={"updated_at": self._clock()})
            return self.repository.save(updated)

    def update(self, user_id: str, changes: PreferenceUpdate) -> Preference:
        """Merge the supplied fields; anything not supplied stays as it is."""
        supplied = changes.model_fields_set

        def apply(pref: Preference) -> Preference:
            update = {}
            if "email_address" in supplied:
                update["email_address"] = changes.email_address
            if "email_frequency" in supplied and changes.email_frequency is not None:
                update["email_frequency"] = changes.email_frequency
            if "channels" in supplied and changes.channels is not None:
                update["channels"] = pref.channels.merged_with(changes.channels)
            if "category_settings" in supplied and changes.category_settings is not None:
                merged = dict(pref.category_settings)
                for category, settings in changes.category_settings.items():
                    merged[category] = merged.get(category, ChannelSettings()).merged_with(settings)
                update["category_settings"] = merged
            return pref.model_copy(update=update)

        return self.modify(user_id, apply)

    def resolve_channels(self, preference: Preference, category: Category) -> set[Channel]:
        """
        Channels enabled for a category.

        The category's own flag wins when set; otherwise the root flag;
        otherwise the system default.
        """
        override = preference.category_settings.get(category, ChannelSettings())
        enabled = set()
        for channel in Channel:
            for level in (override, preference.channels, self.defaults):
                value = level.get(channel)
                if value is not None:
                    if value:
                        enabled.add(channel)
                    break
        return enabled


class DeviceTokenRegistry:
    """
    Push device tokens attached to a user's preference.

    Tokens are unique per user: re-registering a token replaces the earlier
    entry (new device label, fresh last_seen_at) instead of adding a second.
    """

    def __init__(self, store: PreferenceStore, clock: Callable = utcnow):
        self.store = store
        self._clock = clock

    def add_token(self, user_id: str, token: str, device: str = "unknown") -> Preference:
        entry = DeviceToken(token=token, device=device or "unknown", last_seen_at=self._clock())

        def apply(pref: Preference) -> Preference:
            tokens = [dt for dt in pref.device_tokens if dt.token != token]
            tokens.append(entry)
            return pref.model_copy(update={"device_tokens": tokens})

        updated = self.store.modify(user_id, apply)
        logger.info(f"Registered device token for user {user_id} ({entry.device})")
        return updated

    def remove_token(self, user_id: str, token: str) -> Preference:
        """Remove a token. Removing a token that isn't registered is a no-op."""

        def apply(pref: Preference) -> Preference:
            tokens = [dt for dt in pref.device_tokens if dt.token != token]
            return pref.model_copy(update={"device_tokens": tokens})

        return self.store.modify(user_id, apply)
