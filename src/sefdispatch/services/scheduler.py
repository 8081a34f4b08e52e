"""
Cron scheduling for maintenance sweeps and recurring invoice generation.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional, Protocol, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from sefdispatch.config import get_settings

logger = logging.getLogger(__name__)


class CronScheduler(Protocol):
    def add_job(self, job_id: str, cron: str, func: Callable[[], Any]) -> None: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...


class APSchedulerBackend:
    """Runs cron jobs on an APScheduler background thread."""

    def __init__(self, timezone: Optional[str] = None):
        self.timezone = timezone
        self._scheduler = BackgroundScheduler(timezone=timezone) if timezone else BackgroundScheduler()
        self._started = False
        self._lock = threading.Lock()

    def add_job(self, job_id: str, cron: str, func: Callable[[], Any]) -> None:
        # One run at a time; missed runs collapse into one.
        self._scheduler.add_job(
            func,
            trigger=CronTrigger.from_crontab(cron, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

    def start(self) -> None:
        with self._lock:
            if not self._started:
                self._scheduler.start()
                self._started = True

    def shutdown(self) -> None:
        with self._lock:
            if self._started:
                self._scheduler.shutdown(wait=False)
                self._started = False


def _guarded(name: str, func: Callable[[], Any]) -> Callable[[], Any]:
    def run() -> Any:
        logger.info("Running scheduled job: %s", name)
        try:
            result = func()
        except Exception:
            logger.exception("Scheduled job %s failed", name)
            return None
        logger.info("Scheduled job %s finished: %s", name, result)
        return result

    run.__name__ = f"scheduled_{name.replace('-', '_')}"
    return run


class ScheduledMaintenance:
    """Registers every maintenance sweep (and recurring generation) on a scheduler."""

    def __init__(
        self,
        maintenance,
        recurring=None,
        *,
        settings=None,
        scheduler: Optional[CronScheduler] = None,
    ):
        self.settings = settings or get_settings()
        self.maintenance = maintenance
        self.recurring = recurring
        self.scheduler = scheduler or APSchedulerBackend(self.settings.SCHEDULER_TZ)
        self._started = False

    def schedule(self) -> List[Tuple[str, str, Callable[[], Any]]]:
        s = self.settings
        m = self.maintenance
        entries = [
            ("retry-failed-jobs", s.RETRY_SWEEP_CRON, m.retry_failed_jobs),
            ("update-queue-metrics", s.METRICS_CRON, m.sample_queue_metrics),
            ("cleanup-old-jobs", s.CLEANUP_JOBS_CRON, m.cleanup_old_jobs),
            ("dead-letter-queue", s.DEAD_LETTER_CRON, m.dead_letter_jobs),
            ("cleanup-webhook-events", s.CLEANUP_WEBHOOKS_CRON, m.cleanup_webhook_events),
        ]
        if self.recurring is not None:
            entries.append(
                (
                    "recurring-invoices",
                    s.RECURRING_CRON,
                    self.recurring.run_recurring_invoice_generation,
                )
            )
        return entries

    def start(self) -> None:
        if self._started:
            return
        entries = self.schedule()
        for job_id, cron, func in entries:
            self.scheduler.add_job(job_id, cron, _guarded(job_id, func))
        self.scheduler.start()
        self._started = True
        logger.info(
            "Scheduled jobs started: %s",
            ", ".join(f"{job_id} ({cron})" for job_id, cron, _ in entries),
        )

    def stop(self) -> None:
        if not self._started:
            return
        self.scheduler.shutdown()
        self._started = False
        logger.info("Scheduled jobs stopped")
