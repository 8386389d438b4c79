"""
Periodic drivers for the billing engine.

The monthly run fires on the last day of every month at the configured cutoff
time in the billing timezone; the overdue sweep runs on a fixed interval. Manual
triggers share the same guard as the scheduled jobs, so a second invocation
while one is running is rejected instead of double billing.
"""
from dataclasses import asdict
from datetime import datetime
import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.billing_calendar import next_monthly_run, utcnow
from app.services.billing_service import BillingEngine, MonthlyBillingResult


logger = logging.getLogger(__name__)

MONTHLY_JOB_ID = "monthly_billing"
OVERDUE_JOB_ID = "overdue_check"


class BillingScheduler:
    def __init__(
        self,
        engine: BillingEngine,
        cutoff_hour: int = 23,
        cutoff_minute: int = 59,
        overdue_interval_seconds: int = 3600,
        timezone: str = "UTC",
    ):
        self.engine = engine
        self.cutoff_hour = cutoff_hour
        self.cutoff_minute = cutoff_minute
        self.overdue_interval_seconds = overdue_interval_seconds
        self.timezone = timezone
        self.scheduler: Optional[BackgroundScheduler] = None
        self._monthly_lock = threading.Lock()
        self._overdue_lock = threading.Lock()
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[MonthlyBillingResult] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting billing scheduler...")
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.scheduler.add_job(
            self._monthly_job,
            CronTrigger(day="last", hour=self.cutoff_hour, minute=self.cutoff_minute, timezone=self.timezone),
            id=MONTHLY_JOB_ID,
            name="Monthly billing",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._overdue_job,
            IntervalTrigger(seconds=self.overdue_interval_seconds, timezone=self.timezone),
            id=OVERDUE_JOB_ID,
            name="Overdue invoice check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Billing scheduler started next_monthly=%s", self.next_monthly_run())

    def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping billing scheduler...")
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Billing scheduler stopped")

    def trigger_monthly_billing(self) -> Optional[MonthlyBillingResult]:
        """Run the monthly billing now. Returns None when a run is already in progress."""
        if not self._monthly_lock.acquire(blocking=False):
            logger.warning("monthly billing already running; trigger ignored")
            return None
        try:
            result = self.engine.process_monthly_billing()
            self.last_run = utcnow()
            self.last_result = result
            return result
        finally:
            self._monthly_lock.release()

    def trigger_overdue_check(self) -> Optional[int]:
        """Run the overdue sweep now. Returns None when a sweep is already in progress."""
        if not self._overdue_lock.acquire(blocking=False):
            logger.warning("overdue check already running; trigger ignored")
            return None
        try:
            return self.engine.check_overdue_invoices()
        finally:
            self._overdue_lock.release()

    def next_monthly_run(self) -> datetime:
        return next_monthly_run(utcnow(), self.cutoff_hour, self.cutoff_minute, self.timezone)

    def get_status(self) -> dict:
        next_run = self.next_monthly_run()
        return {
            "running": self.running,
            "monthly_billing_in_progress": self._monthly_lock.locked(),
            "overdue_check_in_progress": self._overdue_lock.locked(),
            "next_monthly_run": next_run,
            "seconds_until_next_run": max(0, int((next_run - utcnow()).total_seconds())),
            "overdue_interval_seconds": self.overdue_interval_seconds,
            "last_run": self.last_run,
            "last_result": asdict(self.last_result) if self.last_result else None,
        }

    def _monthly_job(self) -> None:
        try:
            result = self.trigger_monthly_billing()
        except Exception:
            logger.exception("scheduled monthly billing failed")
            return
        if result is not None:
            logger.info(
                "scheduled monthly billing processed=%s errors=%s overdue=%s",
                result.processed_count, result.error_count, result.overdue_count,
            )

    def _overdue_job(self) -> None:
        try:
            count = self.trigger_overdue_check()
        except Exception:
            logger.exception("scheduled overdue check failed")
            return
        if count:
            logger.info("scheduled overdue check deactivated=%s", count)
