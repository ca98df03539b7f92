"""
Retention sweeper.

Deletes notification records and analytics data once they are older than
their store's retention window. Runs on a fixed interval in the background,
never per request.

Design decisions:
- Each store has its own horizon (notifications 30 days, analytics 365 days
  by default); there is no global retention setting
- The clock is read once per sweep, and every cutoff derives from that
  instant
- Deletes go by an age predicate (``created_at < cutoff``), so writes that
  land during a sweep are never caught by it
- One sweep at a time: missed runs are coalesced, not queued up
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shared.config import Settings
from shared.data_store import AnalyticsStore, NotificationRecordStore, RetentionTarget
from shared.models import utcnow

logger = logging.getLogger("retention")

SWEEP_JOB_ID = "retention-sweep"


@dataclass(frozen=True)
class RetentionPolicy:
    target: RetentionTarget
    days: int

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(days=self.days)


class RetentionSweeper:
    """
    Periodically deletes expired records from each managed store.

    Example:
        sweeper = RetentionSweeper.for_stores(settings, records, analytics)
        sweeper.start()      # every retention_sweep_interval_minutes
        sweeper.sweep()      # or run once, now
    """

    def __init__(
        self,
        settings: Settings,
        policies: list[RetentionPolicy],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.interval_minutes = settings.retention_sweep_interval_minutes
        self.policies = list(policies)
        self._clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None

    @classmethod
    def for_stores(
        cls,
        settings: Settings,
        notifications: Optional[NotificationRecordStore] = None,
        analytics: Optional[AnalyticsStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "RetentionSweeper":
        """A sweeper for the stores given, each with its configured horizon."""
        policies = []
        if notifications is not None:
            policies.append(RetentionPolicy(notifications, settings.notification_retention_days))
        if analytics is not None:
            policies.append(RetentionPolicy(analytics, settings.analytics_retention_days))
        return cls(settings, policies, clock)

    def sweep(self) -> dict[str, int]:
        """
        Run one sweep over every managed store.

        Returns:
            Number of records deleted, per store name
        """
        now = self._clock()
        deleted = {}
        for policy in self.policies:
            cutoff = policy.cutoff(now)
            count = policy.target.delete_older_than(cutoff)
            deleted[policy.target.name] = count
            if count:
                logger.info(
                    f"Deleted {count} {policy.target.name} record(s) older than "
                    f"{policy.days} days (before {cutoff.isoformat()})"
                )
        logger.debug(f"Retention sweep finished: {deleted}")
        return deleted

    def _run_sweep(self) -> None:
        # A failed sweep must not kill the scheduler; the next interval tries again
        try:
            self.sweep()
        except Exception:
            logger.exception("Retention sweep failed")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> BackgroundScheduler:
        """Run ``sweep`` every ``retention_sweep_interval_minutes`` in the background."""
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("Retention sweeper already running")
            return self._scheduler

        self._scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )
        self._scheduler.add_job(
            self._run_sweep,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SWEEP_JOB_ID,
            name="Delete expired notification and analytics records",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Retention sweeper started (every {self.interval_minutes} min)")
        return self._scheduler

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Retention sweeper stopped")
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
