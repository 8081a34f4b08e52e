"""
Maintenance sweeps over the job and webhook tables.

Each sweep is independent and isolates per-item failures: one bad row is
logged and skipped, the rest of the batch continues.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from sefdispatch.models.job import QUEUE_NAMES, Job, JobStatus, JobType
from sefdispatch.models.webhook import WebhookEvent
from sefdispatch.services.job_queue import JobQueue, epoch_ms
from sefdispatch.services.job_service import JobService

logger = logging.getLogger(__name__)

DEAD_LETTER_NOTE = "[Dead Letter Queue] Max attempts ({max_attempts}) exceeded"
DEAD_LETTER_FATAL_NOTE = "[Dead Letter Queue] Failed without retry"
RETRY_NOTE = "[Retry] re-enqueued as job {job_id}"

# Payload keys written by the worker that must not be carried into a retry.
_RESULT_KEYS = ("result", "result_at")


def _natural_key(job: Job) -> str:
    payload = job.payload or {}
    return str(payload.get("invoice_id") or payload.get("webhook_id") or job.id)


class MaintenanceService:
    def __init__(
        self,
        session_factory: sessionmaker,
        queue: JobQueue,
        *,
        settings=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.settings = settings or queue.settings
        self.clock = clock or queue.clock

    @property
    def sweeps(self) -> Dict[str, Callable[[], Dict[str, int]]]:
        return {
            "retry": self.retry_failed_jobs,
            "dead-letter": self.dead_letter_jobs,
            "cleanup-jobs": self.cleanup_old_jobs,
            "cleanup-webhooks": self.cleanup_webhook_events,
            "metrics": self.sample_queue_metrics,
        }

    def run(self, name: str) -> Dict[str, int]:
        try:
            sweep = self.sweeps[name]
        except KeyError:
            raise ValueError(f"Unknown sweep: {name}") from None
        return sweep()

    def retry_failed_jobs(self) -> Dict[str, int]:
        """
        Re-enqueue failed jobs that still have attempt budget, oldest first.

        The failed job is never put back to pending: a new job carries the
        remaining budget and the old one is cancelled with a pointer to it.
        Submission jobs are left alone while quiet hours are active.
        """
        now = self.clock()
        in_quiet_hours = self.queue.quiet_hours.is_active(now)
        stats = {"found": 0, "requeued": 0, "skipped": 0, "errors": 0}

        with self.session_factory() as session:
            service = JobService(session, self.settings)
            jobs = service.failed_jobs(exhausted=False, limit=self.settings.RETRY_SWEEP_BATCH)
            stats["found"] = len(jobs)
            logger.info("Retry sweep found %s failed job(s)", len(jobs))

            for job in jobs:
                if in_quiet_hours and job.job_type == JobType.SUBMIT_INVOICE.value:
                    stats["skipped"] += 1
                    continue
                job_id = job.id
                try:
                    payload = {
                        k: v for k, v in (job.payload or {}).items() if k not in _RESULT_KEYS
                    }
                    payload["retry_of"] = job_id
                    queue_name = QUEUE_NAMES.get(job.job_type, job.job_type)
                    new_id = f"retry-{queue_name}-{_natural_key(job)}-{epoch_ms(now)}"
                    remaining = max(job.max_attempts - job.attempts_made, 1)

                    if not service.cancel_job(
                        job_id, RETRY_NOTE.format(job_id=new_id), now=now, commit=False
                    ):
                        session.rollback()
                        stats["skipped"] += 1
                        continue
                    new_job = self.queue.enqueue(
                        job.job_type,
                        payload,
                        job_id=new_id,
                        user_id=job.created_by_id,
                        max_attempts=remaining,
                        dedupe_key=job.dedupe_key,
                        session=session,
                        commit=False,
                    )
                    session.commit()
                    stats["requeued"] += 1
                    logger.info(
                        "Retrying job %s as %s type=%s attempts_left=%s",
                        job_id,
                        new_job.id,
                        job.job_type,
                        remaining,
                    )
                except Exception as exc:
                    session.rollback()
                    stats["errors"] += 1
                    logger.error("Failed to retry job %s: %s", job_id, exc, exc_info=True)
        return stats

    def dead_letter_jobs(self) -> Dict[str, int]:
        """Cancel failed jobs that must not run again: budget spent or failed fatally."""
        now = self.clock()
        stats = {"found": 0, "cancelled": 0, "errors": 0}
        with self.session_factory() as session:
            service = JobService(session, self.settings)
            jobs = service.failed_jobs(exhausted=True)
            stats["found"] = len(jobs)
            for job in jobs:
                job_id = job.id
                try:
                    if job.fatal:
                        note = DEAD_LETTER_FATAL_NOTE
                    else:
                        note = DEAD_LETTER_NOTE.format(max_attempts=job.max_attempts)
                    if service.cancel_job(job_id, note, now=now):
                        stats["cancelled"] += 1
                        logger.warning(
                            "Job moved to dead letter job_id=%s job_type=%s attempts=%s",
                            job_id,
                            job.job_type,
                            job.attempts_made,
                        )
                except Exception as exc:
                    session.rollback()
                    stats["errors"] += 1
                    logger.error(
                        "Failed to dead-letter job %s: %s", job_id, exc, exc_info=True
                    )
        return stats

    def cleanup_old_jobs(self) -> Dict[str, int]:
        cutoff = self.clock() - timedelta(days=self.settings.JOB_RETENTION_DAYS)
        with self.session_factory() as session:
            service = JobService(session, self.settings)
            completed = service.delete_finished_before(JobStatus.COMPLETED, cutoff)
            cancelled = service.delete_finished_before(JobStatus.CANCELLED, cutoff)
        logger.info(
            "Job cleanup completed_deleted=%s cancelled_deleted=%s", completed, cancelled
        )
        return {"completed": completed, "cancelled": cancelled}

    def cleanup_webhook_events(self) -> Dict[str, int]:
        cutoff = self.clock() - timedelta(days=self.settings.WEBHOOK_RETENTION_DAYS)
        with self.session_factory() as session:
            deleted = (
                session.query(WebhookEvent)
                .filter(WebhookEvent.processed.is_(True), WebhookEvent.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            session.commit()
        logger.info("Webhook event cleanup deleted=%s", deleted)
        return {"deleted": deleted}

    def sample_queue_metrics(self) -> Dict[str, int]:
        depths: Dict[str, int] = {}
        with self.session_factory() as session:
            service = JobService(session, self.settings)
            for job_type in JobType:
                queue_name = QUEUE_NAMES[job_type.value]
                depths[queue_name] = service.depth(job_type.value)
                self.queue.metrics.set_queue_depth(queue_name, depths[queue_name])
        logger.debug("Queue depth %s", depths)
        return depths
