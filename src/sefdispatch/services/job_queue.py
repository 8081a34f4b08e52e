"""
Job Queue
Named job types, their handlers and worker pools over the durable job table.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from sefdispatch.config import get_settings
from sefdispatch.models.job import QUEUE_NAMES, Job, JobType
from sefdispatch.services.job_service import JobService
from sefdispatch.services.job_worker import Handler, JobWorker
from sefdispatch.services.metrics import LoggingMetrics, MetricsSink
from sefdispatch.services.quiet_hours import QuietHours

logger = logging.getLogger(__name__)


def epoch_ms(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)


def invoice_dedupe_key(invoice_id: str) -> str:
    return f"{JobType.SUBMIT_INVOICE.value}:invoice:{invoice_id}"


class JobQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        settings=None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        quiet_hours: Optional[QuietHours] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.metrics: MetricsSink = metrics or LoggingMetrics()
        self.clock = clock
        self.quiet_hours = quiet_hours or QuietHours.from_settings(self.settings)
        self._handlers: Dict[str, Handler] = {}
        self._concurrency: Dict[str, int] = {}
        self._workers: List[JobWorker] = []
        self._lock = threading.Lock()

    def register_worker(
        self, job_type: str, handler: Handler, *, concurrency: Optional[int] = None
    ) -> None:
        """Registers the handler for a job type and how many threads poll for it."""
        self._handlers[job_type] = handler
        self._concurrency[job_type] = max(concurrency or 1, 1)
        logger.info(
            "Registered handler for job type %s (concurrency=%s)",
            job_type,
            self._concurrency[job_type],
        )

    def handler_for(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> List[str]:
        return list(self._handlers)

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        run_at: Optional[datetime] = None,
        delay_seconds: float = 0,
        dedupe_key: Optional[str] = None,
        session: Optional[Session] = None,
        commit: bool = True,
    ) -> Job:
        """
        Adds a job. When ``session`` is given the job joins the caller's
        transaction (flushed, committed only if ``commit``).
        """
        now = self.clock()
        if run_at is None:
            run_at = now + timedelta(seconds=delay_seconds)

        def _create(db: Session, do_commit: bool) -> Job:
            return JobService(db, self.settings).create_job(
                job_type,
                payload,
                user_id,
                job_id=job_id,
                max_attempts=max_attempts,
                run_at=run_at,
                dedupe_key=dedupe_key,
                now=now,
                commit=do_commit,
            )

        if session is not None:
            job = _create(session, commit)
        else:
            with self.session_factory() as db:
                job = _create(db, True)
        logger.info(
            "Enqueued job %s type=%s run_at=%s max_attempts=%s",
            job.id,
            job.job_type,
            job.run_at.isoformat() if job.run_at else None,
            job.max_attempts,
        )
        return job

    def enqueue_invoice_submission(
        self,
        invoice_id: str,
        company_id: str,
        user_id: Optional[str] = None,
        *,
        session: Optional[Session] = None,
    ) -> Job:
        """Queues an invoice for submission, deferred to the end of quiet hours if needed."""
        now = self.clock()
        run_at = self.quiet_hours.window_end(now)
        if run_at is not None:
            logger.info(
                "Quiet hours active; invoice %s submission deferred to %s",
                invoice_id,
                run_at.isoformat(),
            )
        payload = {"invoice_id": invoice_id, "company_id": company_id, "user_id": user_id}
        return self.enqueue(
            JobType.SUBMIT_INVOICE.value,
            payload,
            job_id=f"invoice-{invoice_id}-{epoch_ms(now)}",
            user_id=user_id,
            run_at=run_at,
            dedupe_key=invoice_dedupe_key(invoice_id),
            session=session,
        )

    def enqueue_webhook_processing(
        self,
        webhook_id: str,
        event_type: str,
        authority_id: str,
        payload: Dict[str, Any],
        *,
        session: Optional[Session] = None,
    ) -> Job:
        return self.enqueue(
            JobType.PROCESS_WEBHOOK.value,
            {
                "webhook_id": webhook_id,
                "event_type": event_type,
                "authority_id": authority_id,
                "payload": payload,
            },
            job_id=f"webhook-{webhook_id}",
            max_attempts=self.settings.JOB_MAX_ATTEMPTS_WEBHOOK,
            session=session,
        )

    def run_pending(self, job_type: Optional[str] = None, *, max_jobs: int = 100) -> int:
        """Synchronously drains due jobs in the calling thread. Returns the number processed."""
        types = [job_type] if job_type else self.job_types
        if not types:
            return 0
        worker = JobWorker("inline", types, self, self.settings.JOB_POLL_INTERVAL_SECONDS)
        processed = 0
        while processed < max_jobs and worker.run_once():
            processed += 1
        return processed

    def depth(self, job_type: str) -> int:
        with self.session_factory() as db:
            return JobService(db, self.settings).depth(job_type)

    def start(self) -> None:
        with self._lock:
            if self._workers:
                logger.warning("Job queue already started")
                return
            for job_type in self.job_types:
                queue_name = QUEUE_NAMES.get(job_type, job_type)
                for index in range(self._concurrency[job_type]):
                    worker = JobWorker(
                        f"{queue_name}-{index + 1}",
                        [job_type],
                        self,
                        self.settings.JOB_POLL_INTERVAL_SECONDS,
                    )
                    worker.start()
                    self._workers.append(worker)
        logger.info("Job queue started with %s worker thread(s)", len(self._workers))

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stops every worker, letting in-flight jobs finish."""
        with self._lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.request_stop()
        for worker in workers:
            worker.stop(timeout=timeout)
        logger.info("Job queue stopped")
