"""
Job Worker
Polls the job table for one or more job types and executes their handlers.
"""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from sefdispatch.models.job import Job, JobStatus
from sefdispatch.services.job_errors import JobOutcome, OutcomeKind
from sefdispatch.services.job_service import JobService

if TYPE_CHECKING:
    from sefdispatch.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """What a handler gets besides its payload."""

    session: Session
    job: Job
    queue: "JobQueue"
    now: datetime

    @property
    def attempts_exhausted(self) -> bool:
        return self.job.attempts_made >= self.job.max_attempts


Handler = Callable[[Dict[str, Any], JobContext], JobOutcome]


def _format_ctx(job: Job) -> str:
    payload = job.payload or {}
    parts = [f"job_id={job.id}", f"job_type={job.job_type}"]
    for key in ("invoice_id", "company_id", "webhook_id", "event_type", "authority_id"):
        value = payload.get(key)
        if value:
            parts.append(f"{key}={value}")
    parts.append(f"attempt={job.attempts_made}/{job.max_attempts}")
    return " ".join(parts)


class JobWorker:
    def __init__(
        self,
        worker_id: str,
        job_types: Sequence[str],
        queue: "JobQueue",
        poll_interval: float = 2.0,
    ):
        self.worker_id = worker_id
        self.job_types = list(job_types)
        self.queue = queue
        self.poll_interval = poll_interval  # seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Polls and processes one job in the current thread. Returns True if a job was processed."""
        try:
            with self.queue.session_factory() as session:
                job_service = JobService(session, self.queue.settings)
                now = self.queue.clock()
                requeued = job_service.requeue_stale_jobs(now=now)
                if requeued:
                    logger.warning(
                        "Worker '%s' requeued %s stale job(s)", self.worker_id, requeued
                    )
                job = job_service.poll_next_job(self.worker_id, self.job_types, now=now)
                if job is None:
                    return False
                logger.info(
                    "Worker '%s' picked up job %s (%s)",
                    self.worker_id,
                    job.id,
                    job.job_type,
                )
                self._execute_job(job, job_service)
                return True
        except Exception as e:
            logger.error(
                "Worker '%s' error in run_once: %s", self.worker_id, e, exc_info=True
            )
        return False

    def start(self):
        """Starts the worker, polling for jobs in a separate thread."""
        if self.running:
            logger.warning("Worker '%s' is already running.", self.worker_id)
            return

        logger.info("Worker '%s' starting...", self.worker_id)
        self._stop.clear()
        ctx = contextvars.copy_context()
        self._thread = threading.Thread(
            target=ctx.run,
            args=(self._run_loop,),
            name=f"Worker-{self.worker_id}-Loop",
            daemon=True,
        )
        self._thread.start()

    def _run_loop(self):
        while not self._stop.is_set():
            processed = self.run_once()
            if not processed:
                self._stop.wait(self.poll_interval)

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, timeout: Optional[float] = None):
        """Stops the worker and waits for its thread to finish the current job."""
        if not self.running:
            return
        logger.info("Worker '%s' stopping. Waiting for thread to join...", self.worker_id)
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout if timeout is not None else self.poll_interval + 30)
            if self._thread.is_alive():
                logger.warning(
                    "Worker '%s' thread did not terminate gracefully.", self.worker_id
                )
        logger.info("Worker '%s' stopped.", self.worker_id)

    def _execute_job(self, job: Job, job_service: JobService) -> None:
        started = time.monotonic()
        session = job_service.session
        handler = self.queue.handler_for(job.job_type)
        logger.info("Worker '%s' executing job %s", self.worker_id, _format_ctx(job))

        if handler is None:
            error_msg = f"No handler registered for job type: {job.job_type}"
            logger.error("%s %s", error_msg, _format_ctx(job))
            job_service.fail_job(job.id, error_msg, retry=False, now=self.queue.clock())
            self._record(job, "failed", started, "handler_missing")
            return

        context = JobContext(session=session, job=job, queue=self.queue, now=self.queue.clock())
        try:
            outcome = handler(dict(job.payload or {}), context)
            if not isinstance(outcome, JobOutcome):
                outcome = JobOutcome.ok(**(outcome or {}))
        except Exception as e:
            session.rollback()
            logger.error(
                "Job %s handler raised: %s %s", job.id, e, _format_ctx(job), exc_info=True
            )
            outcome = JobOutcome.retryable(f"Job {job.id} execution failed: {e}", reason="exception")

        now = self.queue.clock()
        if outcome.succeeded:
            completed = job_service.complete_job(job.id, result=outcome.result, now=now)
            logger.info(
                "Worker '%s' completed job %s result_keys=%s",
                self.worker_id,
                _format_ctx(job),
                sorted(outcome.result.keys()),
            )
            status = "rescheduled" if outcome.kind == OutcomeKind.RESCHEDULED else "completed"
            if not completed:
                status = "lost"
            self._record(job, status, started, None)
        else:
            retry = outcome.kind == OutcomeKind.RETRYABLE
            new_status = job_service.fail_job(job.id, outcome.error or "failed", retry=retry, now=now)
            log = logger.warning if new_status == JobStatus.PENDING.value else logger.error
            log(
                "Job %s %s (%s) -> %s %s",
                job.id,
                outcome.kind.value,
                outcome.error,
                new_status,
                _format_ctx(job),
            )
            self._record(job, "retrying" if new_status == JobStatus.PENDING.value else "failed", started, outcome.reason)

        job_service.prune_retained(job.job_type)

    def _record(self, job: Job, status: str, started: float, reason: Optional[str]) -> None:
        try:
            self.queue.metrics.record_job(
                job.queue_name, job.job_type, status, time.monotonic() - started, reason
            )
        except Exception:
            logger.exception("Failed to record metrics for job %s", job.id)
