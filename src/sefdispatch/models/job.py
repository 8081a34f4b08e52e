"""
Job Models
Durable record of deferred work (invoice submission, webhook processing).
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from sefdispatch.models.base import Base


class JobStatus(str, enum.Enum):
    # Operator tooling reads these values; keep them stable.
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, enum.Enum):
    SUBMIT_INVOICE = "submit-invoice"
    PROCESS_WEBHOOK = "process-webhook"


# Queue names used for metrics labels.
QUEUE_NAMES = {
    JobType.SUBMIT_INVOICE.value: "invoice",
    JobType.PROCESS_WEBHOOK.value: "webhook",
}


class Job(Base):
    """
    Represents a unit of deferred work.
    """

    __tablename__ = "dispatch_jobs"
    __table_args__ = (
        Index("ix_dispatch_jobs_due", "status", "job_type", "run_at"),
        Index("ix_dispatch_jobs_stale", "status", "started_at"),
    )

    id = Column(String(160), primary_key=True, default=lambda: str(uuid.uuid4()))

    job_type = Column(String(50), nullable=False, index=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    status = Column(String(20), default=JobStatus.PENDING.value, index=True)

    worker_id = Column(String(100), nullable=True)
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    error = Column(Text, nullable=True)
    fatal = Column(Boolean, default=False, nullable=False)  # failed without retry
    dedupe_key = Column(String(120), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    run_at = Column(DateTime, default=datetime.utcnow)  # earliest eligible time
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_by_id = Column(String(64), nullable=True)

    @property
    def queue_name(self) -> str:
        return QUEUE_NAMES.get(self.job_type, self.job_type)
