"""
Recurring Invoice Service
Profiles that spawn draft invoices on a calendar schedule.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from sefdispatch.config import get_settings
from sefdispatch.exceptions import NotFoundError, ValidationError
from sefdispatch.models.invoice import Invoice, InvoiceLine, InvoiceStatus, Partner
from sefdispatch.models.recurring import (
    RecurringFrequency,
    RecurringInvoiceProfile,
    RecurringStatus,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

_STEPS = {
    RecurringFrequency.WEEKLY.value: relativedelta(days=7),
    RecurringFrequency.MONTHLY.value: relativedelta(months=1),
    RecurringFrequency.QUARTERLY.value: relativedelta(months=3),
    RecurringFrequency.YEARLY.value: relativedelta(years=1),
}


def advance_schedule(current: datetime, frequency: str) -> datetime:
    try:
        return current + _STEPS[frequency]
    except KeyError:
        raise ValidationError(f"Unknown frequency: {frequency}", field="frequency") from None


def _as_datetime(value: Union[date, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min)


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def build_invoice_lines(items: List[Dict[str, Any]], default_tax_rate: Decimal) -> List[InvoiceLine]:
    """Snapshot profile items into invoice lines (net amount, tax = net * rate / 100)."""
    lines = []
    for index, item in enumerate(items, start=1):
        quantity = Decimal(str(item["quantity"]))
        price = Decimal(str(item.get("unit_price", item.get("price"))))
        rate = item.get("tax_rate", item.get("vat_rate"))
        tax_rate = Decimal(str(rate)) if rate is not None else default_tax_rate
        amount = _money(quantity * price)
        lines.append(
            InvoiceLine(
                line_number=index,
                item_name=item["name"],
                quantity=quantity,
                unit=item.get("unit") or "kom",
                unit_price=price,
                tax_rate=tax_rate,
                tax_amount=_money(amount * tax_rate / 100),
                amount=amount,
            )
        )
    return lines


class RecurringInvoiceService:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        settings=None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

    def create_profile(
        self,
        company_id: str,
        partner_id: str,
        frequency: str,
        start_date: Union[date, datetime],
        items: List[Dict[str, Any]],
        *,
        end_date: Union[date, datetime, None] = None,
        currency: Optional[str] = None,
        note: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> RecurringInvoiceProfile:
        if frequency not in _STEPS:
            raise ValidationError(f"Unknown frequency: {frequency}", field="frequency")
        if not items:
            raise ValidationError("At least one item is required", field="items")
        for item in items:
            if not item.get("name") or item.get("quantity") is None:
                raise ValidationError("Every item needs a name and quantity", field="items")
            if item.get("unit_price", item.get("price")) is None:
                raise ValidationError("Every item needs a unit price", field="items")

        start = _as_datetime(start_date)
        end = _as_datetime(end_date)
        if end is not None and end < start:
            raise ValidationError("end_date is before start_date", field="end_date")

        with self.session_factory() as session:
            if session.get(Partner, partner_id) is None:
                raise NotFoundError("Partner", partner_id)
            profile = RecurringInvoiceProfile(
                company_id=company_id,
                partner_id=partner_id,
                frequency=frequency,
                start_date=start,
                end_date=end,
                next_run_at=start.replace(hour=0, minute=0, second=0, microsecond=0),
                items=list(items),
                currency=currency or self.settings.RECURRING_CURRENCY,
                note=note,
                created_by=created_by,
                status=RecurringStatus.ACTIVE.value,
            )
            session.add(profile)
            session.commit()
            session.refresh(profile)
            logger.info(
                "Created recurring profile %s company_id=%s frequency=%s",
                profile.id,
                company_id,
                frequency,
            )
            return profile

    def cancel_profile(self, profile_id: str, company_id: str) -> RecurringInvoiceProfile:
        with self.session_factory() as session:
            profile = (
                session.query(RecurringInvoiceProfile)
                .filter(
                    RecurringInvoiceProfile.id == profile_id,
                    RecurringInvoiceProfile.company_id == company_id,
                )
                .first()
            )
            if profile is None:
                raise NotFoundError("RecurringInvoiceProfile", profile_id)
            profile.status = RecurringStatus.CANCELLED.value
            session.commit()
            session.refresh(profile)
            return profile

    def list_profiles(self, company_id: str) -> List[RecurringInvoiceProfile]:
        with self.session_factory() as session:
            return (
                session.query(RecurringInvoiceProfile)
                .filter(RecurringInvoiceProfile.company_id == company_id)
                .order_by(RecurringInvoiceProfile.created_at.desc())
                .all()
            )

    def due_profile_ids(self, session: Session, now: datetime) -> List[str]:
        # End dates are whole days: a profile ending today still runs today.
        today = _start_of_day(now)
        rows = (
            session.query(RecurringInvoiceProfile.id)
            .filter(
                RecurringInvoiceProfile.status == RecurringStatus.ACTIVE.value,
                RecurringInvoiceProfile.next_run_at <= now,
                (RecurringInvoiceProfile.end_date.is_(None))
                | (
                    (RecurringInvoiceProfile.end_date >= RecurringInvoiceProfile.next_run_at)
                    & (RecurringInvoiceProfile.end_date >= today)
                ),
            )
            .order_by(RecurringInvoiceProfile.next_run_at.asc())
            .all()
        )
        return [row[0] for row in rows]

    def complete_lapsed_profiles(self, session: Session, now: datetime) -> int:
        """Active profiles whose end date passed before their next run are completed."""
        lapsed = (
            session.query(RecurringInvoiceProfile)
            .filter(
                RecurringInvoiceProfile.status == RecurringStatus.ACTIVE.value,
                RecurringInvoiceProfile.end_date.isnot(None),
                RecurringInvoiceProfile.end_date < _start_of_day(now),
            )
            .update(
                {
                    RecurringInvoiceProfile.status: RecurringStatus.COMPLETED.value,
                    RecurringInvoiceProfile.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        session.commit()
        return lapsed

    def run_recurring_invoice_generation(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Generate one draft invoice for every due profile.

        Each profile is handled in its own transaction; failures are collected
        per profile and never abort the batch.
        """
        now = now or self.clock()
        with self.session_factory() as session:
            profile_ids = self.due_profile_ids(session, now)
            lapsed = self.complete_lapsed_profiles(session, now)
        if lapsed:
            logger.info("Completed %s recurring profile(s) past their end date", lapsed)
        logger.info("Found %s recurring profile(s) to process", len(profile_ids))

        results: Dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        for profile_id in profile_ids:
            try:
                invoice_number = self._generate_for_profile(profile_id, now)
            except Exception as exc:
                logger.error(
                    "Failed to process recurring profile %s: %s", profile_id, exc, exc_info=True
                )
                results["failed"] += 1
                results["errors"].append({"id": profile_id, "error": str(exc)})
                continue
            if invoice_number is not None:
                results["success"] += 1
        return results

    def _generate_for_profile(self, profile_id: str, now: datetime) -> Optional[str]:
        with self.session_factory() as session:
            try:
                profile = session.get(RecurringInvoiceProfile, profile_id)
                scheduled_at = profile.next_run_at
                next_run = advance_schedule(scheduled_at, profile.frequency)
                status = profile.status
                if profile.end_date is not None and next_run > profile.end_date:
                    status = RecurringStatus.COMPLETED.value

                # Claim this run; a concurrent generator that got here first wins.
                claimed = (
                    session.query(RecurringInvoiceProfile)
                    .filter(
                        RecurringInvoiceProfile.id == profile_id,
                        RecurringInvoiceProfile.status == RecurringStatus.ACTIVE.value,
                        RecurringInvoiceProfile.next_run_at == scheduled_at,
                    )
                    .update(
                        {
                            RecurringInvoiceProfile.next_run_at: next_run,
                            RecurringInvoiceProfile.last_run_at: now,
                            RecurringInvoiceProfile.status: status,
                            RecurringInvoiceProfile.updated_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                if not claimed:
                    session.rollback()
                    logger.info("Recurring profile %s already processed", profile_id)
                    return None

                invoice = self._build_invoice(session, profile, now)
                session.add(invoice)
                session.commit()
            except Exception:
                session.rollback()
                raise

            logger.info(
                "Generated invoice %s from recurring profile %s (next run %s, status %s)",
                invoice.invoice_number,
                profile_id,
                next_run.isoformat(),
                status,
            )
            return invoice.invoice_number

    def _build_invoice(
        self, session: Session, profile: RecurringInvoiceProfile, now: datetime
    ) -> Invoice:
        issue_date = now.date()
        terms = profile.partner.default_payment_terms
        if terms is None:
            terms = self.settings.RECURRING_DEFAULT_PAYMENT_TERMS_DAYS
        lines = build_invoice_lines(
            profile.items or [], Decimal(self.settings.RECURRING_DEFAULT_TAX_RATE)
        )
        subtotal = sum((line.amount for line in lines), Decimal(0))
        tax_amount = sum((line.tax_amount for line in lines), Decimal(0))

        return Invoice(
            company_id=profile.company_id,
            partner_id=profile.partner_id,
            invoice_number=self._next_invoice_number(session, profile.company_id, issue_date),
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=terms),
            currency=profile.currency,
            subtotal=subtotal,
            tax_amount=tax_amount,
            total_amount=subtotal + tax_amount,
            status=InvoiceStatus.DRAFT.value,
            remarks=profile.note,
            recurring_profile_id=profile.id,
            lines=lines,
        )

    def _next_invoice_number(self, session: Session, company_id: str, issue_date: date) -> str:
        year = issue_date.year
        count = (
            session.query(func.count(Invoice.id))
            .filter(
                Invoice.company_id == company_id,
                Invoice.issue_date >= date(year, 1, 1),
                Invoice.issue_date < date(year + 1, 1, 1),
            )
            .scalar()
            or 0
        )
        return f"{year}-{count + 1:06d}"
