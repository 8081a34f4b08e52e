"""
Job Service
Session-scoped store operations for dispatch jobs.

Every status transition is a compare-and-set: the UPDATE only applies while
the row is still in the expected prior status, so concurrent workers and
maintenance sweeps never overwrite each other.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import asc, func, or_, select
from sqlalchemy.orm import Session

from sefdispatch.config import get_settings
from sefdispatch.models.job import Job, JobStatus, JobType

logger = logging.getLogger(__name__)


def default_max_attempts(job_type: str, settings=None) -> int:
    settings = settings or get_settings()
    if job_type == JobType.PROCESS_WEBHOOK.value:
        return settings.JOB_MAX_ATTEMPTS_WEBHOOK
    return settings.JOB_MAX_ATTEMPTS_DEFAULT


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
    return max(base_seconds, 0) * (2 ** max(attempt - 1, 0))


class JobService:
    def __init__(self, session: Session, settings=None):
        self.session = session
        self.settings = settings or get_settings()

    def create_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
        *,
        job_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        run_at: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Job:
        """Submit a new job, or return the pending one it duplicates."""
        now = now or datetime.utcnow()
        if job_id:
            existing = self.session.get(Job, job_id)
            if existing is not None:
                logger.info("Job %s already scheduled; returning existing", job_id)
                return existing
        if dedupe_key:
            existing = (
                self.session.query(Job)
                .filter(
                    Job.dedupe_key == dedupe_key,
                    Job.status == JobStatus.PENDING.value,
                )
                .order_by(Job.created_at.desc())
                .first()
            )
            if existing:
                logger.info(
                    "Job %s already pending for dedupe_key=%s", existing.id, dedupe_key
                )
                return existing

        job = Job(
            job_type=job_type,
            payload=payload,
            created_by_id=user_id,
            status=JobStatus.PENDING.value,
            attempts_made=0,
            max_attempts=(
                max_attempts
                if max_attempts is not None
                else default_max_attempts(job_type, self.settings)
            ),
            dedupe_key=dedupe_key,
            run_at=run_at or now,
            created_at=now,
            updated_at=now,
        )
        if job_id:
            job.id = job_id
        self.session.add(job)
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        return job

    def poll_next_job(
        self,
        worker_id: str,
        job_types: Iterable[str],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """
        Finds the next due pending job and claims it for this worker.

        Uses FOR UPDATE SKIP LOCKED on PostgreSQL for concurrent worker safety;
        the claim itself is a guarded UPDATE so SQLite workers cannot double-claim.
        """
        now = now or datetime.utcnow()
        dialect = self.session.bind.dialect.name if self.session.bind else "unknown"

        query = (
            self.session.query(Job)
            .filter(
                Job.status == JobStatus.PENDING.value,
                Job.job_type.in_(list(job_types)),
                Job.run_at <= now,
            )
            .order_by(asc(Job.run_at), asc(Job.created_at))
        )

        if dialect == "postgresql":
            query = query.with_for_update(skip_locked=True)

        job = query.first()
        if job is None:
            return None

        claimed = (
            self.session.query(Job)
            .filter(Job.id == job.id, Job.status == JobStatus.PENDING.value)
            .update(
                {
                    Job.status: JobStatus.ACTIVE.value,
                    Job.worker_id: worker_id,
                    Job.started_at: now,
                    Job.updated_at: now,
                    Job.attempts_made: Job.attempts_made + 1,
                },
                synchronize_session=False,
            )
        )
        self.session.commit()
        if not claimed:
            return None
        self.session.refresh(job)
        return job

    def complete_job(
        self,
        job_id: str,
        result: Any = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Mark an active job completed (optionally persisting result into payload)."""
        now = now or datetime.utcnow()
        job = self.session.get(Job, job_id)
        if job is None:
            return False
        values: Dict[Any, Any] = {
            Job.status: JobStatus.COMPLETED.value,
            Job.completed_at: now,
            Job.updated_at: now,
        }
        if result is not None:
            payload = dict(job.payload or {})
            payload["result"] = result
            payload["result_at"] = now.isoformat()
            values[Job.payload] = payload
        updated = self._transition(job_id, JobStatus.ACTIVE, values)
        self.session.commit()
        if not updated:
            logger.warning("Job %s was not active; completion ignored", job_id)
        self.session.refresh(job)
        return bool(updated)

    def fail_job(
        self,
        job_id: str,
        error_message: str,
        *,
        retry: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Record a failed attempt.

        Retryable failures with budget left go back to pending with exponential
        backoff; everything else ends in ``failed``. Returns the resulting status.
        """
        now = now or datetime.utcnow()
        job = self.session.get(Job, job_id)
        if job is None:
            return None

        if retry and job.attempts_made < job.max_attempts:
            delay = backoff_delay(job.attempts_made, self.settings.JOB_BACKOFF_BASE_SECONDS)
            new_status = JobStatus.PENDING.value
            values: Dict[Any, Any] = {
                Job.status: new_status,
                Job.error: str(error_message),
                Job.run_at: now + timedelta(seconds=delay),
                Job.worker_id: None,
                Job.started_at: None,
                Job.completed_at: None,
                Job.updated_at: now,
            }
        else:
            new_status = JobStatus.FAILED.value
            values = {
                Job.status: new_status,
                Job.error: str(error_message),
                Job.completed_at: now,
                Job.updated_at: now,
            }
            if not retry:
                values[Job.fatal] = True

        updated = self._transition(job_id, JobStatus.ACTIVE, values)
        self.session.commit()
        self.session.refresh(job)
        if not updated:
            logger.warning("Job %s was not active; failure ignored", job_id)
            return job.status
        return new_status

    def cancel_job(
        self,
        job_id: str,
        annotation: str,
        *,
        expected: JobStatus = JobStatus.FAILED,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> bool:
        """Move a job to the terminal ``cancelled`` status, appending ``annotation``."""
        now = now or datetime.utcnow()
        job = self.session.get(Job, job_id)
        if job is None:
            return False
        error = f"{job.error}\n\n{annotation}" if job.error else annotation
        updated = self._transition(
            job_id,
            expected,
            {
                Job.status: JobStatus.CANCELLED.value,
                Job.error: error,
                Job.updated_at: now,
            },
        )
        if commit:
            self.session.commit()
        self.session.refresh(job)
        return bool(updated)

    def requeue_stale_jobs(self, *, now: Optional[datetime] = None) -> int:
        """Requeue jobs stuck in ACTIVE beyond the stale timeout."""
        timeout = self.settings.JOB_STALE_TIMEOUT_SECONDS
        if timeout <= 0:
            return 0
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=timeout)
        stale_jobs = (
            self.session.query(Job)
            .filter(
                Job.status == JobStatus.ACTIVE.value,
                Job.started_at.isnot(None),
                Job.started_at < cutoff,
            )
            .all()
        )
        if not stale_jobs:
            return 0
        for job in stale_jobs:
            if job.attempts_made < job.max_attempts:
                self._transition(
                    job.id,
                    JobStatus.ACTIVE,
                    {
                        Job.status: JobStatus.PENDING.value,
                        Job.worker_id: None,
                        Job.started_at: None,
                        Job.error: "stale_timeout_requeued",
                        Job.run_at: now,
                        Job.updated_at: now,
                    },
                )
            else:
                self._transition(
                    job.id,
                    JobStatus.ACTIVE,
                    {
                        Job.status: JobStatus.FAILED.value,
                        Job.completed_at: now,
                        Job.error: "stale_timeout_failed",
                        Job.updated_at: now,
                    },
                )
        self.session.commit()
        return len(stale_jobs)

    def prune_retained(self, job_type: str) -> int:
        """Keep only the most recent N completed and N' failed jobs of a type."""
        deleted = 0
        for status, keep in (
            (JobStatus.COMPLETED, self.settings.JOB_KEEP_COMPLETED),
            (JobStatus.FAILED, self.settings.JOB_KEEP_FAILED),
        ):
            if keep <= 0:
                continue
            base = self.session.query(Job).filter(
                Job.job_type == job_type, Job.status == status.value
            )
            total = base.with_entities(func.count(Job.id)).scalar() or 0
            if total <= keep:
                continue
            subq = (
                base.order_by(Job.updated_at.desc())
                .with_entities(Job.id)
                .offset(keep)
                .subquery()
            )
            deleted += (
                self.session.query(Job)
                .filter(Job.id.in_(select(subq.c.id)))
                .delete(synchronize_session=False)
            )
        if deleted:
            self.session.commit()
        return deleted

    def failed_jobs(self, *, exhausted: bool, limit: Optional[int] = None) -> List[Job]:
        """
        Failed jobs, oldest-updated first.

        ``exhausted`` selects jobs that must not run again: budget spent or
        failed fatally. The rest still have attempts left.
        """
        query = self.session.query(Job).filter(Job.status == JobStatus.FAILED.value)
        if exhausted:
            query = query.filter(or_(Job.fatal.is_(True), Job.attempts_made >= Job.max_attempts))
        else:
            query = query.filter(Job.fatal.is_(False), Job.attempts_made < Job.max_attempts)
        query = query.order_by(asc(Job.updated_at), asc(Job.created_at))
        if limit:
            query = query.limit(limit)
        return query.all()

    def delete_finished_before(self, status: JobStatus, cutoff: datetime) -> int:
        column = Job.completed_at if status == JobStatus.COMPLETED else Job.updated_at
        deleted = (
            self.session.query(Job)
            .filter(Job.status == status.value, column < cutoff)
            .delete(synchronize_session=False)
        )
        self.session.commit()
        return deleted

    def count_depth(self, job_type: Optional[str] = None) -> Dict[str, int]:
        query = self.session.query(Job.status, func.count(Job.id))
        if job_type:
            query = query.filter(Job.job_type == job_type)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in query.group_by(Job.status).all():
            counts[status] = count
        return counts

    def depth(self, job_type: str) -> int:
        counts = self.count_depth(job_type)
        return counts[JobStatus.PENDING.value] + counts[JobStatus.ACTIVE.value]

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        query = self.session.query(Job)
        if status:
            query = query.filter(Job.status == status)
        if job_type:
            query = query.filter(Job.job_type == job_type)
        return query.order_by(Job.created_at.desc()).offset(offset).limit(limit).all()

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.session.get(Job, job_id)

    def _transition(self, job_id: str, expected: JobStatus, values: Dict[Any, Any]) -> int:
        return (
            self.session.query(Job)
            .filter(Job.id == job_id, Job.status == expected.value)
            .update(values, synchronize_session=False)
        )
