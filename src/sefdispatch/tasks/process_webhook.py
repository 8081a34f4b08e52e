"""
Webhook reconciliation task (job type ``process-webhook``).

Applies authority status notifications to local invoices. Re-processing an
event is harmless: processed events are skipped and re-applying the current
status only refreshes the mirrored authority status.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from sefdispatch.exceptions import StateConflictError
from sefdispatch.models.invoice import Invoice, InvoiceStatus
from sefdispatch.models.webhook import WebhookEvent
from sefdispatch.services.audit_service import AuditService
from sefdispatch.services.job_errors import JobOutcome
from sefdispatch.services.job_worker import JobContext

logger = logging.getLogger(__name__)

EVENT_STATUS_MAP = {
    "delivered": InvoiceStatus.DELIVERED,
    "accepted": InvoiceStatus.ACCEPTED,
    "rejected": InvoiceStatus.REJECTED,
    "cancelled": InvoiceStatus.CANCELLED,
    "expired": InvoiceStatus.EXPIRED,
}

# Later stages never fall back to earlier ones (out-of-order delivery).
_STATUS_RANK = {
    InvoiceStatus.DRAFT.value: 0,
    InvoiceStatus.SENT.value: 1,
    InvoiceStatus.DELIVERED.value: 2,
    InvoiceStatus.ACCEPTED.value: 3,
    InvoiceStatus.REJECTED.value: 3,
    InvoiceStatus.CANCELLED.value: 3,
    InvoiceStatus.EXPIRED.value: 3,
}


def resolve_target_status(event_type: str) -> Optional[InvoiceStatus]:
    """``invoice.delivered`` and ``delivered`` both map to ``delivered``."""
    key = (event_type or "").lower()
    if key.startswith("invoice."):
        key = key[len("invoice."):]
    return EVENT_STATUS_MAP.get(key)


def apply_status(
    session: Session,
    invoice: Invoice,
    target: InvoiceStatus,
    *,
    authority_status: Optional[str],
    action: str,
    payload: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> bool:
    """
    Move ``invoice`` to ``target`` in the caller's transaction.

    Returns True when the status changed (and an audit row was added). Setting
    the status it already has only overwrites ``authority_status``.
    Raises StateConflictError when the row changed underneath us.
    """
    old_status = invoice.status
    mirrored = authority_status or target.value

    if old_status == target.value:
        invoice.authority_status = mirrored
        return False

    if _STATUS_RANK.get(target.value, 0) < _STATUS_RANK.get(old_status, 0):
        logger.warning(
            "Ignoring %s for invoice %s: already %s", target.value, invoice.id, old_status
        )
        return False

    updated = (
        session.query(Invoice)
        .filter(Invoice.id == invoice.id, Invoice.status == old_status)
        .update(
            {Invoice.status: target.value, Invoice.authority_status: mirrored},
            synchronize_session=False,
        )
    )
    if not updated:
        raise StateConflictError(old_status, f"invoice {invoice.id}")
    session.refresh(invoice)

    AuditService(session).record(
        "invoice",
        invoice.id,
        action,
        old_data={"status": old_status},
        new_data={
            "status": target.value,
            "authority_status": authority_status,
            "webhook_payload": payload,
        },
        user_id=user_id,
    )
    logger.info(
        "Invoice %s status %s -> %s (%s)", invoice.id, old_status, target.value, action
    )
    return True


def process_webhook(payload: Dict[str, Any], ctx: JobContext) -> JobOutcome:
    webhook_id = payload.get("webhook_id")
    event_type = payload.get("event_type") or ""
    authority_id = payload.get("authority_id")
    body = payload.get("payload") or {}
    session = ctx.session

    event = session.get(WebhookEvent, webhook_id) if webhook_id else None
    if event is None:
        return JobOutcome.fatal(f"Webhook event not found: {webhook_id}", reason="event_missing")
    if event.processed:
        logger.info("Webhook %s already processed; skipping", webhook_id)
        return JobOutcome.ok(webhook_id=webhook_id, skipped=True)

    try:
        invoice = (
            session.query(Invoice).filter(Invoice.authority_id == str(authority_id)).first()
        )
        if invoice is None:
            logger.warning("Invoice not found for authority id %s", authority_id)
            _mark_processed(
                event, ctx.now, error=f"Invoice not found for authority id: {authority_id}"
            )
            session.commit()
            return JobOutcome.ok(
                webhook_id=webhook_id, success=False, reason="invoice_not_found"
            )

        target = resolve_target_status(event_type)
        changed = False
        if target is None:
            logger.warning("Unknown webhook event type: %s (webhook %s)", event_type, webhook_id)
        else:
            changed = apply_status(
                session,
                invoice,
                target,
                authority_status=body.get("status"),
                action=f"webhook_{event_type}",
                payload=body,
            )

        _mark_processed(event, ctx.now)
        session.commit()
        return JobOutcome.ok(
            webhook_id=webhook_id,
            invoice_id=invoice.id,
            event_type=event_type,
            new_status=target.value if target else None,
            changed=changed,
        )
    except Exception as exc:
        session.rollback()
        logger.error("Failed to process webhook %s: %s", webhook_id, exc, exc_info=True)
        session.query(WebhookEvent).filter(WebhookEvent.id == webhook_id).update(
            {WebhookEvent.error: str(exc)}, synchronize_session=False
        )
        session.commit()
        return JobOutcome.retryable(str(exc), reason="reconcile_failed")


def _mark_processed(event: WebhookEvent, now: datetime, *, error: Optional[str] = None) -> None:
    event.processed = True
    event.processed_at = now
    event.error = error
