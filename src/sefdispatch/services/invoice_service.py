"""
Invoice Service
Operator-triggered operations on invoices: queue a submission, cancel at the
authority, poll the authority status.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from sefdispatch.exceptions import NotFoundError, StateConflictError
from sefdispatch.integrations.authority import AuthorityClient
from sefdispatch.models.invoice import Invoice, InvoiceStatus
from sefdispatch.models.job import Job
from sefdispatch.services.job_queue import JobQueue
from sefdispatch.tasks.process_webhook import apply_status

logger = logging.getLogger(__name__)

# Authority-side status names -> local status. "Sent"/"New" carry no transition.
AUTHORITY_STATUS_MAP = {
    "Seen": InvoiceStatus.DELIVERED,
    "Delivered": InvoiceStatus.DELIVERED,
    "Approved": InvoiceStatus.ACCEPTED,
    "Accepted": InvoiceStatus.ACCEPTED,
    "Rejected": InvoiceStatus.REJECTED,
    "Cancelled": InvoiceStatus.CANCELLED,
    "Storno": InvoiceStatus.CANCELLED,
    "Expired": InvoiceStatus.EXPIRED,
}


class InvoiceDispatchService:
    def __init__(self, session: Session, queue: JobQueue):
        self.session = session
        self.queue = queue

    def send_invoice(self, invoice_id: str, user_id: Optional[str] = None) -> Job:
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise StateConflictError(invoice.status, f"invoice {invoice_id}")
        return self.queue.enqueue_invoice_submission(
            invoice.id, invoice.company_id, user_id, session=self.session
        )


class InvoiceAuthorityService:
    def __init__(
        self,
        session: Session,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self.session = session
        self.client_factory = client_factory or AuthorityClient.for_company

    def _load_submitted(self, invoice_id: str) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if not invoice.authority_id:
            raise StateConflictError(
                invoice.status, f"invoice {invoice_id}", reason="not submitted to authority"
            )
        return invoice

    def cancel_invoice(
        self, invoice_id: str, reason: str, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        invoice = self._load_submitted(invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED.value:
            return {"invoice_id": invoice.id, "status": invoice.status, "changed": False}

        result = self.client_factory(invoice.company).cancel(invoice.authority_id, reason)
        changed = apply_status(
            self.session,
            invoice,
            InvoiceStatus.CANCELLED,
            authority_status=result.get("status"),
            action="cancelled",
            payload={"reason": reason},
            user_id=user_id,
        )
        self.session.commit()
        logger.info("Invoice %s cancelled at authority (%s)", invoice.id, reason)
        return {"invoice_id": invoice.id, "status": invoice.status, "changed": changed}

    def poll_invoice_status(self, invoice_id: str) -> Dict[str, Any]:
        invoice = self._load_submitted(invoice_id)
        remote = self.client_factory(invoice.company).get_status(invoice.authority_id)
        remote_status = remote.get("status") or ""
        target = AUTHORITY_STATUS_MAP.get(remote_status)

        changed = False
        if target is not None:
            changed = apply_status(
                self.session,
                invoice,
                target,
                authority_status=remote_status,
                action="status_polled",
                payload=remote.get("raw"),
            )
        elif remote_status:
            invoice.authority_status = remote_status
        self.session.commit()
        return {
            "invoice_id": invoice.id,
            "status": invoice.status,
            "authority_status": invoice.authority_status,
            "changed": changed,
        }
