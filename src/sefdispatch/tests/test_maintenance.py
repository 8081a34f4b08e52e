from __future__ import annotations

from datetime import timedelta

import pytest

from sefdispatch.integrations.authority import AuthorityValidationError
from sefdispatch.models.invoice import Invoice, InvoiceStatus
from sefdispatch.models.job import Job, JobStatus, JobType
from sefdispatch.models.webhook import WebhookEvent
from sefdispatch.services.job_queue import epoch_ms
from sefdispatch.services.job_service import JobService

from .conftest import NIGHT

SUBMIT = JobType.SUBMIT_INVOICE.value
WEBHOOK = JobType.PROCESS_WEBHOOK.value


def _failed_job(dispatcher, *, attempts, max_attempts=3, job_type=SUBMIT, payload=None, job_id=None):
    # Workers only leave a job failed once its budget is spent or it failed fatally;
    # failed rows with budget left are written outside the worker, e.g. by hand.
    now = dispatcher.queue.clock()
    with dispatcher.session_factory() as db:
        job = JobService(db, dispatcher.settings).create_job(
            job_type,
            payload or {"invoice_id": "inv-1", "company_id": "c-1"},
            job_id=job_id,
            max_attempts=max_attempts,
            now=now,
        )
        job.status = JobStatus.FAILED.value
        job.attempts_made = attempts
        job.error = "Temporary error: connection reset."
        job.completed_at = now
        db.commit()
        return job.id


def _get(dispatcher, job_id):
    with dispatcher.session_factory() as db:
        return db.get(Job, job_id)


def test_retry_sweep_reenqueues_with_remaining_budget(dispatcher, clock):
    old_id = _failed_job(dispatcher, attempts=1)

    stats = dispatcher.maintenance.retry_failed_jobs()
    assert stats == {"found": 1, "requeued": 1, "skipped": 0, "errors": 0}

    new_id = f"retry-invoice-inv-1-{epoch_ms(clock())}"
    old = _get(dispatcher, old_id)
    assert old.status == JobStatus.CANCELLED.value
    assert old.error.endswith(f"[Retry] re-enqueued as job {new_id}")

    new = _get(dispatcher, new_id)
    assert new.status == JobStatus.PENDING.value
    assert new.max_attempts == 2
    assert new.attempts_made == 0
    assert new.payload["retry_of"] == old_id
    assert new.payload["invoice_id"] == "inv-1"


def test_retry_sweep_ignores_exhausted_jobs(dispatcher):
    _failed_job(dispatcher, attempts=3)
    assert dispatcher.maintenance.retry_failed_jobs()["found"] == 0


def test_retry_sweep_holds_submissions_during_quiet_hours(dispatcher, clock):
    submit_id = _failed_job(dispatcher, attempts=1)
    webhook_id = _failed_job(
        dispatcher, attempts=1, max_attempts=5, job_type=WEBHOOK, payload={"webhook_id": "w-9"}
    )
    clock.now = NIGHT

    stats = dispatcher.maintenance.retry_failed_jobs()
    assert stats["skipped"] == 1
    assert stats["requeued"] == 1
    assert _get(dispatcher, submit_id).status == JobStatus.FAILED.value
    assert _get(dispatcher, webhook_id).status == JobStatus.CANCELLED.value
    assert _get(dispatcher, f"retry-webhook-w-9-{epoch_ms(NIGHT)}").max_attempts == 4


def test_dead_letter_sweep_cancels_exhausted_jobs(dispatcher):
    exhausted = _failed_job(dispatcher, attempts=3)
    retryable = _failed_job(dispatcher, attempts=1)

    stats = dispatcher.maintenance.dead_letter_jobs()
    assert stats == {"found": 1, "cancelled": 1, "errors": 0}

    job = _get(dispatcher, exhausted)
    assert job.status == JobStatus.CANCELLED.value
    assert job.error.endswith("[Dead Letter Queue] Max attempts (3) exceeded")
    assert _get(dispatcher, retryable).status == JobStatus.FAILED.value

    # Dead-lettered jobs are out of reach of the retry sweep.
    stats = dispatcher.maintenance.retry_failed_jobs()
    assert stats["requeued"] == 1
    assert _get(dispatcher, exhausted).status == JobStatus.CANCELLED.value


def test_cleanup_removes_old_finished_jobs(dispatcher, clock):
    old_now = clock() - timedelta(days=31)
    with dispatcher.session_factory() as db:
        service = JobService(db, dispatcher.settings)
        old_done = service.create_job(SUBMIT, {"n": 1}, now=old_now)
        old_done.status = JobStatus.COMPLETED.value
        old_done.completed_at = old_now
        recent_done = service.create_job(SUBMIT, {"n": 2}, now=clock())
        recent_done.status = JobStatus.COMPLETED.value
        recent_done.completed_at = clock()
        old_cancelled = service.create_job(SUBMIT, {"n": 3}, now=old_now)
        old_cancelled.status = JobStatus.CANCELLED.value
        old_cancelled.updated_at = old_now
        old_pending = service.create_job(SUBMIT, {"n": 4}, now=old_now)
        db.commit()
        keep = {recent_done.id, old_pending.id}

    assert dispatcher.maintenance.cleanup_old_jobs() == {"completed": 1, "cancelled": 1}
    with dispatcher.session_factory() as db:
        assert {job.id for job in db.query(Job).all()} == keep


def test_cleanup_removes_only_old_processed_webhook_events(dispatcher, clock):
    old = clock() - timedelta(days=61)
    with dispatcher.session_factory() as db:
        db.add_all(
            [
                WebhookEvent(id="old-done", authority_id="1", event_type="delivered",
                             payload={}, processed=True, created_at=old),
                WebhookEvent(id="old-open", authority_id="1", event_type="delivered",
                             payload={}, processed=False, created_at=old),
                WebhookEvent(id="new-done", authority_id="1", event_type="delivered",
                             payload={}, processed=True, created_at=clock()),
            ]
        )
        db.commit()

    assert dispatcher.maintenance.cleanup_webhook_events() == {"deleted": 1}
    with dispatcher.session_factory() as db:
        assert {e.id for e in db.query(WebhookEvent).all()} == {"old-open", "new-done"}


def test_queue_metrics_sweep_samples_depth(dispatcher, metrics):
    dispatcher.queue.enqueue(SUBMIT, {"invoice_id": "a"})
    dispatcher.queue.enqueue(SUBMIT, {"invoice_id": "b"})
    dispatcher.queue.enqueue(WEBHOOK, {"webhook_id": "c"})

    assert dispatcher.maintenance.sample_queue_metrics() == {"invoice": 2, "webhook": 1}
    assert metrics.snapshot()["queue_depth"] == {"invoice": 2, "webhook": 1}


def test_run_by_name(dispatcher):
    assert dispatcher.maintenance.run("cleanup-webhooks") == {"deleted": 0}
    with pytest.raises(ValueError):
        dispatcher.maintenance.run("vacuum")


def test_rejected_submission_is_dead_lettered_not_resubmitted(dispatcher, make_invoice, authority, clock):
    invoice_id = make_invoice()
    authority.always_fail = AuthorityValidationError("Invalid buyer VAT number", error_code="VAL")
    with dispatcher.session_factory() as db:
        company_id = db.get(Invoice, invoice_id).company_id
    job = dispatcher.queue.enqueue_invoice_submission(invoice_id, company_id, "user-1")
    dispatcher.queue.run_pending(SUBMIT)

    for _ in range(4):
        clock.advance(minutes=15)
        assert dispatcher.maintenance.retry_failed_jobs()["found"] == 0
        assert dispatcher.queue.run_pending(SUBMIT) == 0

    assert len(authority.submissions) == 1
    with dispatcher.session_factory() as db:
        assert db.query(Job).count() == 1
        assert db.get(Invoice, invoice_id).status == InvoiceStatus.DRAFT.value

    assert dispatcher.maintenance.dead_letter_jobs() == {"found": 1, "cancelled": 1, "errors": 0}
    dead = _get(dispatcher, job.id)
    assert dead.status == JobStatus.CANCELLED.value
    assert dead.error.startswith("Validation error")
    assert dead.attempts_made == 1
    assert dead.error.endswith("[Dead Letter Queue] Failed without retry")
