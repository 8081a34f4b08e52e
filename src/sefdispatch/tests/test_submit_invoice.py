from __future__ import annotations

from sefdispatch.integrations.authority import (
    AuthorityNetworkError,
    AuthorityRateLimitError,
    AuthorityServerError,
    AuthorityValidationError,
)
from sefdispatch.models.audit import AuditLog
from sefdispatch.models.invoice import Invoice, InvoiceStatus
from sefdispatch.models.job import Job, JobStatus, JobType
from sefdispatch.services.job_queue import invoice_dedupe_key

from .conftest import NIGHT, NIGHT_WINDOW_END

SUBMIT = JobType.SUBMIT_INVOICE.value


def _invoice(session_factory, invoice_id) -> Invoice:
    with session_factory() as db:
        return db.get(Invoice, invoice_id)


def _jobs(session_factory):
    with session_factory() as db:
        return db.query(Job).filter(Job.job_type == SUBMIT).order_by(Job.created_at).all()


def _enqueue(dispatcher, invoice_id):
    invoice = _invoice(dispatcher.session_factory, invoice_id)
    return dispatcher.queue.enqueue_invoice_submission(invoice.id, invoice.company_id, "user-1")


def test_successful_submission_marks_invoice_sent(dispatcher, make_invoice, authority, metrics, clock):
    invoice_id = make_invoice()
    job = _enqueue(dispatcher, invoice_id)

    assert dispatcher.queue.run_pending(SUBMIT) == 1

    invoice = _invoice(dispatcher.session_factory, invoice_id)
    assert invoice.status == InvoiceStatus.SENT.value
    assert invoice.authority_id == "1001"
    assert invoice.authority_status == "Sent"
    assert invoice.sent_at == clock()
    assert invoice.document.startswith("<?xml")
    assert invoice.note is None

    with dispatcher.session_factory() as db:
        audits = db.query(AuditLog).filter(AuditLog.entity_id == invoice_id).all()
        assert [a.action for a in audits] == ["sent"]
        assert audits[0].user_id == "user-1"
        assert db.get(Job, job.id).status == JobStatus.COMPLETED.value

    assert authority.submissions[0]["request_id"] == job.id
    assert metrics.count("invoice_sent", "success", "demo", invoice.company_id) == 1


def test_validation_failure_returns_invoice_to_draft_without_retry(
    dispatcher, make_invoice, authority, clock
):
    invoice_id = make_invoice()
    authority.always_fail = AuthorityValidationError(
        "Invalid buyer VAT number", detail=["BT-48"], error_code="VAL"
    )
    job = _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    clock.advance(hours=1)
    assert dispatcher.queue.run_pending(SUBMIT) == 0

    invoice = _invoice(dispatcher.session_factory, invoice_id)
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert invoice.note.startswith("Validation error: Invalid buyer VAT number")
    with dispatcher.session_factory() as db:
        stored = db.get(Job, job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.attempts_made == 1
        assert stored.fatal is True
    assert len(authority.submissions) == 1


def test_resubmission_after_rejection_sends_a_clean_document(dispatcher, make_invoice, authority, clock):
    invoice_id = make_invoice()
    authority.always_fail = AuthorityValidationError("Invalid buyer VAT number", error_code="VAL")
    _enqueue(dispatcher, invoice_id)
    dispatcher.queue.run_pending(SUBMIT)
    assert _invoice(dispatcher.session_factory, invoice_id).note.startswith("Validation error")

    authority.always_fail = None
    clock.advance(minutes=5)
    _enqueue(dispatcher, invoice_id)
    assert dispatcher.queue.run_pending(SUBMIT) == 1

    assert len(authority.submissions) == 2
    assert "Validation error" not in authority.submissions[-1]["document"]
    invoice = _invoice(dispatcher.session_factory, invoice_id)
    assert invoice.status == InvoiceStatus.SENT.value
    assert invoice.note is None
    assert "Validation error" not in invoice.document


def test_local_validation_failure_never_reaches_authority(
    dispatcher, session_factory, make_invoice, authority
):
    invoice_id = make_invoice()
    with session_factory() as db:
        invoice = db.get(Invoice, invoice_id)
        for line in list(invoice.lines):
            db.delete(line)
        db.commit()

    _enqueue(dispatcher, invoice_id)
    dispatcher.queue.run_pending(SUBMIT)

    assert authority.submissions == []
    invoice = _invoice(session_factory, invoice_id)
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert "invoice has no lines" in invoice.note


def test_network_failure_is_retried_with_growing_delay_then_surfaced(
    dispatcher, make_invoice, authority, clock
):
    invoice_id = make_invoice()
    authority.always_fail = AuthorityNetworkError("connection reset")
    job = _enqueue(dispatcher, invoice_id)

    delays = []
    for attempt in range(1, 4):
        assert dispatcher.queue.run_pending(SUBMIT) == 1
        with dispatcher.session_factory() as db:
            stored = db.get(Job, job.id)
        assert stored.attempts_made == attempt
        invoice = _invoice(dispatcher.session_factory, invoice_id)
        if attempt < 3:
            assert stored.status == JobStatus.PENDING.value
            assert invoice.note is None
            delays.append((stored.run_at - clock()).total_seconds())
            clock.now = stored.run_at

    assert delays == [2.0, 4.0]
    assert stored.status == JobStatus.FAILED.value
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert invoice.note.startswith("Submission failed after 3 attempts")
    assert len(authority.submissions) == 3
    assert {s["request_id"] for s in authority.submissions} == {job.id}


def test_transient_failure_then_success(dispatcher, make_invoice, authority, clock, metrics):
    invoice_id = make_invoice()
    authority.errors = [AuthorityServerError("503", status_code=503)]
    _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    assert _invoice(dispatcher.session_factory, invoice_id).status == InvoiceStatus.DRAFT.value
    clock.advance(seconds=2)
    dispatcher.queue.run_pending(SUBMIT)

    assert _invoice(dispatcher.session_factory, invoice_id).status == InvoiceStatus.SENT.value
    assert metrics.count("job", "invoice", SUBMIT, "retrying", "server") == 1
    assert metrics.count("job", "invoice", SUBMIT, "completed", "") == 1


def test_rate_limit_is_retryable(dispatcher, make_invoice, authority, metrics):
    invoice_id = make_invoice()
    authority.errors = [AuthorityRateLimitError("slow down", retry_after=30)]
    job = _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    with dispatcher.session_factory() as db:
        stored = db.get(Job, job.id)
    assert stored.status == JobStatus.PENDING.value
    assert "Rate limited" in stored.error
    assert metrics.count("job", "invoice", SUBMIT, "retrying", "rate_limit") == 1


def test_quiet_hours_reschedules_without_calling_authority(
    dispatcher, session_factory, make_invoice, authority, clock
):
    invoice_id = make_invoice()
    invoice = _invoice(session_factory, invoice_id)
    clock.now = NIGHT
    # A job that became due during the window, e.g. a backoff retry.
    job = dispatcher.queue.enqueue(
        SUBMIT,
        {"invoice_id": invoice_id, "company_id": invoice.company_id},
        dedupe_key=invoice_dedupe_key(invoice_id),
    )

    assert dispatcher.queue.run_pending(SUBMIT) == 1
    assert authority.submissions == []

    jobs = _jobs(session_factory)
    pending = [j for j in jobs if j.status == JobStatus.PENDING.value]
    assert len(pending) == 1
    assert pending[0].run_at == NIGHT_WINDOW_END
    assert pending[0].attempts_made == 0
    assert pending[0].max_attempts == 3
    original = next(j for j in jobs if j.id == job.id)
    assert original.status == JobStatus.COMPLETED.value
    assert original.payload["result"]["job_id"] == pending[0].id

    clock.now = NIGHT_WINDOW_END
    assert dispatcher.queue.run_pending(SUBMIT) == 1
    assert len(authority.submissions) == 1
    assert _invoice(session_factory, invoice_id).status == InvoiceStatus.SENT.value


def test_enqueue_during_quiet_hours_is_deferred_to_window_end(dispatcher, make_invoice, clock):
    invoice_id = make_invoice()
    clock.now = NIGHT
    job = _enqueue(dispatcher, invoice_id)
    assert job.run_at == NIGHT_WINDOW_END
    assert dispatcher.queue.run_pending(SUBMIT) == 0


def test_duplicate_enqueue_returns_pending_job(dispatcher, make_invoice, clock):
    invoice_id = make_invoice()
    first = _enqueue(dispatcher, invoice_id)
    clock.advance(milliseconds=5)
    second = _enqueue(dispatcher, invoice_id)
    assert first.id == second.id
    assert len(_jobs(dispatcher.session_factory)) == 1


def test_invoice_no_longer_draft_is_skipped(dispatcher, make_invoice, authority):
    invoice_id = make_invoice(status=InvoiceStatus.SENT.value, authority_id="77")
    job = _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    assert authority.submissions == []
    with dispatcher.session_factory() as db:
        stored = db.get(Job, job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.payload["result"]["skipped"] is True


def test_missing_api_key_is_fatal_and_noted(dispatcher, make_invoice, authority):
    invoice_id = make_invoice(api_key=None)
    job = _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    assert authority.submissions == []
    invoice = _invoice(dispatcher.session_factory, invoice_id)
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert "no authority API key" in invoice.note
    with dispatcher.session_factory() as db:
        stored = db.get(Job, job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.attempts_made == 1
        assert stored.fatal is True


def test_missing_invoice_is_fatal(dispatcher, authority):
    job = dispatcher.queue.enqueue(SUBMIT, {"invoice_id": "does-not-exist"})
    dispatcher.queue.run_pending(SUBMIT)
    with dispatcher.session_factory() as db:
        stored = db.get(Job, job.id)
    assert stored.status == JobStatus.FAILED.value
    assert "Invoice not found" in stored.error
    assert authority.submissions == []


def test_unexpected_error_is_not_retried(dispatcher, make_invoice, authority, clock):
    invoice_id = make_invoice()
    authority.always_fail = KeyError("SalesInvoiceId")
    job = _enqueue(dispatcher, invoice_id)

    dispatcher.queue.run_pending(SUBMIT)
    clock.advance(minutes=5)
    dispatcher.queue.run_pending(SUBMIT)

    assert len(authority.submissions) == 1
    invoice = _invoice(dispatcher.session_factory, invoice_id)
    assert invoice.note.startswith("Unexpected error:")
    with dispatcher.session_factory() as db:
        assert db.get(Job, job.id).status == JobStatus.FAILED.value
