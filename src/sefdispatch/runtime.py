"""
Runtime wiring: builds the queue, its handlers, the maintenance sweeps and the
scheduler from one set of settings. Nothing here is a module-level singleton;
the API, the CLI and tests each build their own ``Dispatcher``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import sessionmaker

from sefdispatch.config import get_settings
from sefdispatch.integrations.documents import DocumentGenerator
from sefdispatch.models.job import JobType
from sefdispatch.services.job_queue import JobQueue
from sefdispatch.services.maintenance import MaintenanceService
from sefdispatch.services.metrics import InMemoryMetrics, MetricsSink
from sefdispatch.services.quiet_hours import QuietHours
from sefdispatch.services.recurring_service import RecurringInvoiceService
from sefdispatch.services.scheduler import CronScheduler, ScheduledMaintenance
from sefdispatch.tasks.process_webhook import process_webhook
from sefdispatch.tasks.submit_invoice import SubmitInvoiceTask

logger = logging.getLogger(__name__)


@dataclass
class Dispatcher:
    settings: Any
    session_factory: sessionmaker
    queue: JobQueue
    maintenance: MaintenanceService
    recurring: RecurringInvoiceService
    scheduled: ScheduledMaintenance
    client_factory: Optional[Callable[..., Any]] = None

    def start(self, *, workers: bool = True, scheduler: bool = True) -> None:
        if workers:
            self.queue.start()
        if scheduler:
            self.scheduled.start()

    def stop(self) -> None:
        self.scheduled.stop()
        self.queue.stop()


def build_dispatcher(
    session_factory: Optional[sessionmaker] = None,
    *,
    settings=None,
    metrics: Optional[MetricsSink] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
    quiet_hours: Optional[QuietHours] = None,
    client_factory: Optional[Callable[..., Any]] = None,
    documents: Optional[DocumentGenerator] = None,
    scheduler: Optional[CronScheduler] = None,
) -> Dispatcher:
    settings = settings or get_settings()
    if session_factory is None:
        from sefdispatch.database import get_session_factory

        session_factory = get_session_factory()

    queue = JobQueue(
        session_factory,
        settings=settings,
        metrics=metrics or InMemoryMetrics(),
        clock=clock,
        quiet_hours=quiet_hours,
    )
    queue.register_worker(
        JobType.SUBMIT_INVOICE.value,
        SubmitInvoiceTask(client_factory=client_factory, documents=documents),
        concurrency=settings.JOB_CONCURRENCY_SUBMIT,
    )
    queue.register_worker(
        JobType.PROCESS_WEBHOOK.value,
        process_webhook,
        concurrency=settings.JOB_CONCURRENCY_WEBHOOK,
    )

    maintenance = MaintenanceService(session_factory, queue, settings=settings)
    recurring = RecurringInvoiceService(session_factory, settings=settings, clock=clock)
    scheduled = ScheduledMaintenance(
        maintenance, recurring, settings=settings, scheduler=scheduler
    )
    return Dispatcher(
        settings=settings,
        session_factory=session_factory,
        queue=queue,
        maintenance=maintenance,
        recurring=recurring,
        scheduled=scheduled,
        client_factory=client_factory,
    )
