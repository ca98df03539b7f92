"""
In-memory record stores for the consuming services.

Each consuming service owns its data:
- Notification service owns preferences and notification records
- Analytics service owns tracked URLs, click events and daily aggregates

Design decisions:
- Every store guards its state with a lock, so consumer worker threads,
  the API and the retention sweeper can share one instance
- Uniqueness is enforced at insert time (the in-memory stand-in for a unique
  index), never by a separate read followed by a write
- Reads hand out copies; callers cannot mutate stored records in place
- Retention deletes evaluate an age predicate per record under the lock, so
  records written while a sweep runs are judged on their own timestamp
"""

import threading
from collections import defaultdict
from datetime import datetime, time, timezone
from typing import Optional, Protocol
from urllib.parse import urlparse

from shared.errors import PreferenceConflict
from shared.models import (
    ClickEvent,
    NotificationRecord,
    Preference,
    TrackedUrl,
    UrlStat,
)


class RetentionTarget(Protocol):
    """A store the retention sweeper can age out."""

    name: str

    def delete_older_than(self, cutoff: datetime) -> int:
        ...


# =============================================================================
# Preferences
# =============================================================================

class PreferenceRepository:
    """
    Durable preference records, unique on user_id.

    This is the storage seam under PreferenceStore. ``insert`` behaves like an
    insert against a unique index: it either creates the record or raises
    PreferenceConflict.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, Preference] = {}

    def find(self, user_id: str) -> Optional[Preference]:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy(deep=True) if record else None

    def insert(self, preference: Preference) -> Preference:
        with self._lock:
            if preference.user_id in self._records:
                raise PreferenceConflict(preference.user_id)
            self._records[preference.user_id] = preference.model_copy(deep=True)
            return preference

    def save(self, preference: Preference) -> Preference:
        """Replace an existing record."""
        with self._lock:
            if preference.user_id not in self._records:
                raise KeyError(preference.user_id)
            self._records[preference.user_id] = preference.model_copy(deep=True)
            return preference

    def count(self) -> int:
        with self._lock:
            return len(self._records)


# =============================================================================
# Notification Records
# =============================================================================

class NotificationRecordStore:
    """
    Records of dispatched notifications, unique on their idempotency key.

    Fanout claims a key with ``add_if_absent`` before sending; a False return
    means the delivery already happened and must be skipped.

    The inbox operations (``get``, ``mark_read``, ``mark_all_read``,
    ``unread_count``, ``delete``) never see soft-deleted records.
    """

    name = "notifications"

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: dict[tuple, NotificationRecord] = {}
        self._key_by_id: dict[str, tuple] = {}

    def add_if_absent(self, record: NotificationRecord) -> bool:
        with self._lock:
            key = record.idempotency_key
            if key in self._by_key:
                return False
            self._by_key[key] = record
            self._key_by_id[record.id] = key
            return True

    def discard(self, record: NotificationRecord) -> None:
        """Release a claim whose delivery failed so a retry can deliver it."""
        with self._lock:
            existing = self._by_key.get(record.idempotency_key)
            if existing is not None and existing.id == record.id:
                del self._by_key[record.idempotency_key]
                del self._key_by_id[record.id]

    def list_for_user(self, user_id: str, limit: Optional[int] = None) -> list[NotificationRecord]:
        """A user's records, newest first."""
        with self._lock:
            records = [r.model_copy() for r in self._by_key.values() if r.user_id == user_id and not r.deleted]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit is not None else records

    def all(self) -> list[NotificationRecord]:
        with self._lock:
            return [r.model_copy() for r in self._by_key.values()]

    def count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._by_key)
            return sum(1 for r in self._by_key.values() if r.user_id == user_id)

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def _find(self, user_id: str, record_id: str) -> Optional[NotificationRecord]:
        key = self._key_by_id.get(record_id)
        record = self._by_key.get(key) if key is not None else None
        if record is None or record.user_id != user_id or record.deleted:
            return None
        return record

    def get(self, user_id: str, record_id: str) -> Optional[NotificationRecord]:
        """One of the user's records; None when missing, deleted or someone else's."""
        with self._lock:
            record = self._find(user_id, record_id)
            return record.model_copy() if record else None

    def mark_read(self, user_id: str, record_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            record = self._find(user_id, record_id)
            if record is None:
                return None
            updated = record.model_copy(update={"read": True})
            self._by_key[updated.idempotency_key] = updated
            return updated.model_copy()

    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread record of the user as read. Returns how many changed."""
        with self._lock:
            unread = [
                key for key, r in self._by_key.items()
                if r.user_id == user_id and not r.read and not r.deleted
            ]
            for key in unread:
                self._by_key[key] = self._by_key[key].model_copy(update={"read": True})
        return len(unread)

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(
                1 for r in self._by_key.values()
                if r.user_id == user_id and not r.read and not r.deleted
            )

    def delete(self, user_id: str, record_id: str) -> bool:
        """Soft-delete a record. Returns False when there was nothing to delete."""
        with self._lock:
            record = self._find(user_id, record_id)
            if record is None:
                return False
            self._by_key[record.idempotency_key] = record.model_copy(update={"deleted": True})
            return True

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [k for k, r in self._by_key.items() if r.created_at < cutoff]
            for key in expired:
                del self._key_by_id[self._by_key.pop(key).id]
        return len(expired)


# =============================================================================
# Analytics
# =============================================================================

def _referer_domain(referer: Optional[str]) -> str:
    if not referer:
        return "direct"
    host = urlparse(referer).hostname
    return host or "direct"


class AnalyticsStore:
    """
    Click events and daily per-short-code aggregates.

    ``record_click`` is the single atomic write path: it stores the click,
    bumps the running total on the tracked URL and updates the day's bucket.

    Tracked URLs are never swept by retention. Milestones are crossed on
    their running totals, so dropping one would restart its count at zero
    and announce milestones the owner already got.
    """

    name = "analytics"

    def __init__(self):
        self._lock = threading.Lock()
        self._urls: dict[str, TrackedUrl] = {}
        self._clicks: dict[str, ClickEvent] = {}  # keyed by event_id
        self._stats: dict[tuple, UrlStat] = {}  # keyed by (short_code, day)
        self._visitors: dict[tuple, set[str]] = defaultdict(set)

    # -------------------------------------------------------------------------
    # Tracked URLs
    # -------------------------------------------------------------------------

    def register_url(
        self,
        short_code: str,
        original_url: Optional[str],
        user_id: Optional[str],
        created_at: Optional[datetime],
    ) -> TrackedUrl:
        """Create or fill in a short code's baseline without touching its click total."""
        with self._lock:
            current = self._urls.get(short_code) or TrackedUrl(short_code=short_code)
            updated = current.model_copy(update={
                "original_url": original_url or current.original_url,
                "user_id": user_id or current.user_id,
                "url_created_at": created_at or current.url_created_at,
            })
            self._urls[short_code] = updated
            return updated.model_copy()

    def get_url(self, short_code: str) -> Optional[TrackedUrl]:
        with self._lock:
            url = self._urls.get(short_code)
            return url.model_copy() if url else None

    def total_clicks(self, short_code: str) -> int:
        with self._lock:
            url = self._urls.get(short_code)
            return url.total_clicks if url else 0

    # -------------------------------------------------------------------------
    # Clicks
    # -------------------------------------------------------------------------

    def has_click(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._clicks

    def record_click(self, click: ClickEvent) -> Optional[int]:
        """
        Store a click and update the aggregates.

        Returns the short code's new total, or None when a click with the same
        event id was already recorded.
        """
        with self._lock:
            if click.event_id in self._clicks:
                return None
            self._clicks[click.event_id] = click

            url = self._urls.get(click.short_code) or TrackedUrl(
                short_code=click.short_code,
                original_url=click.original_url,
                user_id=click.user_id,
            )
            url = url.model_copy(update={"total_clicks": url.total_clicks + 1})
            self._urls[click.short_code] = url

            day = click.timestamp.astimezone(timezone.utc).date()
            key = (click.short_code, day)
            stat = self._stats.get(key) or UrlStat(
                short_code=click.short_code,
                day=day,
                created_at=datetime.combine(day, time.min, tzinfo=timezone.utc),
            )
            stat = stat.model_copy(deep=True)
            stat.total_clicks += 1
            stat.last_click_at = click.timestamp

            if click.visitor_hash and click.visitor_hash not in self._visitors[key]:
                self._visitors[key].add(click.visitor_hash)
                stat.unique_visitors += 1

            device = click.device_type.value
            stat.device_stats[device] = stat.device_stats.get(device, 0) + 1
            if click.country_code:
                stat.country_stats[click.country_code] = stat.country_stats.get(click.country_code, 0) + 1
            domain = _referer_domain(click.referer)
            stat.referer_stats[domain] = stat.referer_stats.get(domain, 0) + 1

            self._stats[key] = stat
            return url.total_clicks

    def get_stats(self, short_code: str) -> list[UrlStat]:
        """Daily buckets for a short code, oldest first."""
        with self._lock:
            stats = [s.model_copy(deep=True) for (code, _), s in self._stats.items() if code == short_code]
        return sorted(stats, key=lambda s: s.day)

    def click_count(self) -> int:
        with self._lock:
            return len(self._clicks)

    def delete_older_than(self, cutoff: datetime) -> int:
        """Drop click events and daily buckets older than ``cutoff``. Tracked URLs are kept."""
        with self._lock:
            old_clicks = [eid for eid, c in self._clicks.items() if c.timestamp < cutoff]
            for event_id in old_clicks:
                del self._clicks[event_id]

            old_stats = [k for k, s in self._stats.items() if s.created_at < cutoff]
            for key in old_stats:
                del self._stats[key]
                self._visitors.pop(key, None)

        return len(old_clicks) + len(old_stats)
