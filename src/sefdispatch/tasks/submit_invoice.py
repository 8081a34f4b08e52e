"""
Invoice submission task (job type ``submit-invoice``).

Payload: ``{"invoice_id": ..., "company_id": ..., "user_id": ...}``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from sefdispatch.integrations.authority import (
    AuthorityClient,
    AuthorityError,
    AuthorityNetworkError,
    AuthorityRateLimitError,
    AuthorityServerError,
    AuthorityValidationError,
    classify_authority_error,
)
from sefdispatch.integrations.documents import DocumentGenerator, UblDocumentGenerator
from sefdispatch.models.invoice import AuthorityEnvironment, Invoice, InvoiceStatus
from sefdispatch.models.job import JobType
from sefdispatch.services.audit_service import AuditService
from sefdispatch.services.job_errors import ErrorClass, JobOutcome
from sefdispatch.services.job_queue import epoch_ms, invoice_dedupe_key
from sefdispatch.services.job_worker import JobContext

logger = logging.getLogger(__name__)


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, AuthorityRateLimitError):
        return "rate_limit"
    if isinstance(exc, AuthorityNetworkError):
        return "network"
    if isinstance(exc, AuthorityServerError):
        return "server"
    if isinstance(exc, AuthorityValidationError):
        return "validation"
    if isinstance(exc, AuthorityError):
        return "authority"
    return "unknown"


class SubmitInvoiceTask:
    """Submits one draft invoice to the authority and records the outcome."""

    def __init__(
        self,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
        documents: Optional[DocumentGenerator] = None,
    ):
        self.client_factory = client_factory or AuthorityClient.for_company
        self.documents = documents or UblDocumentGenerator()

    def __call__(self, payload: Dict[str, Any], ctx: JobContext) -> JobOutcome:
        invoice_id = payload.get("invoice_id")
        user_id = payload.get("user_id")
        if not invoice_id:
            return JobOutcome.fatal("Missing invoice_id in payload", reason="bad_payload")

        quiet = ctx.queue.quiet_hours
        if quiet.is_active(ctx.now):
            return self._reschedule(payload, ctx)

        session = ctx.session
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            return JobOutcome.fatal(f"Invoice not found: {invoice_id}", reason="invoice_missing")

        if invoice.status != InvoiceStatus.DRAFT.value:
            logger.info(
                "Invoice %s is %s; submission already satisfied", invoice_id, invoice.status
            )
            return JobOutcome.ok(invoice_id=invoice_id, skipped=True, status=invoice.status)

        company = invoice.company
        if not company.authority_api_key:
            error = f"Company {company.id} has no authority API key configured"
            self._set_note(ctx, invoice_id, error)
            return JobOutcome.fatal(error, reason="credential_missing")

        environment = company.authority_environment or AuthorityEnvironment.DEMO.value
        started = time.monotonic()
        try:
            validation = self.documents.validate_invoice(invoice)
            if not validation.valid:
                raise AuthorityValidationError(
                    "; ".join(validation.errors), detail=validation.errors, error_code="local"
                )
            document = self.documents.generate_invoice_document(invoice)
            client = self.client_factory(company)
            result = client.submit(document, request_id=ctx.job.id)
        except Exception as exc:
            duration = time.monotonic() - started
            ctx.queue.metrics.record_invoice_sent("failure", environment, company.id, duration)
            return self._handle_failure(ctx, invoice_id, exc)

        updated = (
            session.query(Invoice)
            .filter(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.DRAFT.value)
            .update(
                {
                    Invoice.status: InvoiceStatus.SENT.value,
                    Invoice.authority_id: result.authority_id,
                    Invoice.authority_status: result.status,
                    Invoice.sent_at: ctx.now,
                    Invoice.document: document,
                    Invoice.note: None,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            # Another path moved the invoice while the authority call was in flight.
            session.rollback()
            logger.warning(
                "Invoice %s left draft during submission; authority_id=%s not stored",
                invoice_id,
                result.authority_id,
            )
            return JobOutcome.ok(invoice_id=invoice_id, skipped=True)

        AuditService(session).record(
            "invoice",
            invoice_id,
            "sent",
            old_data={"status": InvoiceStatus.DRAFT.value},
            new_data={
                "status": InvoiceStatus.SENT.value,
                "authority_id": result.authority_id,
                "authority_status": result.status,
            },
            user_id=user_id,
        )
        session.commit()

        duration = time.monotonic() - started
        ctx.queue.metrics.record_invoice_sent("success", environment, company.id, duration)
        logger.info(
            "Invoice %s sent authority_id=%s status=%s",
            invoice_id,
            result.authority_id,
            result.status,
        )
        return JobOutcome.ok(
            invoice_id=invoice_id, authority_id=result.authority_id, status=result.status
        )

    def _reschedule(self, payload: Dict[str, Any], ctx: JobContext) -> JobOutcome:
        run_at = ctx.queue.quiet_hours.window_end(ctx.now)
        invoice_id = payload["invoice_id"]
        new_job = ctx.queue.enqueue(
            JobType.SUBMIT_INVOICE.value,
            dict(payload),
            job_id=f"invoice-{invoice_id}-quiet-{epoch_ms(ctx.now)}",
            user_id=payload.get("user_id"),
            run_at=run_at,
            dedupe_key=invoice_dedupe_key(invoice_id),
            session=ctx.session,
            commit=False,
        )
        logger.info(
            "Quiet hours active; invoice %s rescheduled as job %s at %s",
            invoice_id,
            new_job.id,
            run_at.isoformat(),
        )
        return JobOutcome.rescheduled(
            invoice_id=invoice_id, job_id=new_job.id, run_at=run_at.isoformat()
        )

    def _handle_failure(self, ctx: JobContext, invoice_id: str, exc: Exception) -> JobOutcome:
        reason = _failure_reason(exc)
        attempt = f"{ctx.job.attempts_made}/{ctx.job.max_attempts}"

        if classify_authority_error(exc) == ErrorClass.RETRYABLE:
            if isinstance(exc, AuthorityRateLimitError):
                logger.warning(
                    "Invoice %s rate limited; authority asks to retry after %ss (attempt %s)",
                    invoice_id,
                    exc.retry_after,
                    attempt,
                )
                error = f"Rate limited. Will retry after {exc.retry_after}s"
            else:
                logger.warning(
                    "Invoice %s temporary failure (%s), will retry (attempt %s)",
                    invoice_id,
                    exc,
                    attempt,
                )
                error = f"Temporary error: {exc}. Will retry."
            if ctx.attempts_exhausted:
                self._set_note(
                    ctx,
                    invoice_id,
                    f"Submission failed after {ctx.job.attempts_made} attempts: {exc}",
                )
            return JobOutcome.retryable(error, reason=reason)

        if isinstance(exc, AuthorityValidationError):
            logger.error(
                "Invoice %s rejected by validation, will NOT retry: %s detail=%s",
                invoice_id,
                exc,
                exc.detail,
            )
            note = f"Validation error: {exc.message}. Please fix the invoice data."
        else:
            logger.error(
                "Invoice %s failed with unclassified error, will NOT retry: %s",
                invoice_id,
                exc,
                exc_info=not isinstance(exc, AuthorityError),
            )
            note = f"Unexpected error: {exc}"
        self._set_note(ctx, invoice_id, note)
        return JobOutcome.fatal(note, reason=reason)

    def _set_note(self, ctx: JobContext, invoice_id: str, note: str) -> None:
        """Keeps the invoice in draft and surfaces ``note`` to the user."""
        session = ctx.session
        session.rollback()
        session.query(Invoice).filter(
            Invoice.id == invoice_id, Invoice.status == InvoiceStatus.DRAFT.value
        ).update({Invoice.note: note}, synchronize_session=False)
        session.commit()

