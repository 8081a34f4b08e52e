from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from sefdispatch.config import Settings
from sefdispatch.database import create_db_engine, create_session_factory, init_db
from sefdispatch.integrations.authority import SubmitResult
from sefdispatch.models.base import Base
from sefdispatch.models.invoice import Company, Invoice, InvoiceLine, InvoiceStatus, Partner
from sefdispatch.runtime import build_dispatcher
from sefdispatch.services.metrics import InMemoryMetrics

# Tuesday; 11:00 in Belgrade, outside quiet hours.
DAYTIME = datetime(2026, 3, 10, 10, 0, 0)
# 03:00 in Belgrade (CET), inside the 01:00-06:00 window; it ends at 05:00 UTC.
NIGHT = datetime(2026, 3, 10, 2, 0, 0)
NIGHT_WINDOW_END = datetime(2026, 3, 10, 5, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAuthorityClient:
    """Stands in for ``AuthorityClient``; ``errors`` are raised in order, then submits succeed."""

    def __init__(self) -> None:
        self.submissions: List[Dict[str, Any]] = []
        self.cancellations: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []
        self.always_fail: Optional[Exception] = None
        self.remote_status = "Sent"
        self.healthy = True
        self.health_checks = 0
        self._next_id = 1000

    def submit(self, document: str, *, request_id: Optional[str] = None) -> SubmitResult:
        self.submissions.append({"document": document, "request_id": request_id})
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        self._next_id += 1
        return SubmitResult(authority_id=str(self._next_id), status="Sent", raw={})

    def cancel(self, authority_id: str, reason: str) -> Dict[str, Any]:
        self.cancellations.append({"authority_id": authority_id, "reason": reason})
        return {"status": "Cancelled", "raw": {}}

    def get_status(self, authority_id: str) -> Dict[str, Any]:
        return {"status": self.remote_status, "comment": None, "raw": {"Status": self.remote_status}}

    def health(self) -> bool:
        self.health_checks += 1
        return self.healthy


class FakeScheduler:
    def __init__(self) -> None:
        self.jobs: Dict[str, Any] = {}
        self.started = False
        self.shutdowns = 0

    def add_job(self, job_id, cron, func) -> None:
        self.jobs[job_id] = (cron, func)

    def start(self) -> None:
        self.started = True

    def shutdown(self) -> None:
        self.started = False
        self.shutdowns += 1


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DATABASE_URL="sqlite:///:memory:",
        JOB_BACKOFF_BASE_SECONDS=2.0,
        JOB_MAX_ATTEMPTS_DEFAULT=3,
        JOB_MAX_ATTEMPTS_WEBHOOK=5,
        QUIET_HOURS_START=1,
        QUIET_HOURS_END=6,
        QUIET_HOURS_TZ="Europe/Belgrade",
        WEBHOOK_SECRET="",
    )


@pytest.fixture()
def engine(settings):
    engine = create_db_engine(settings.TEST_DATABASE_URL)
    init_db(create_tables=True, bind_engine=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def clock():
    return FakeClock(DAYTIME)


@pytest.fixture()
def metrics():
    return InMemoryMetrics()


@pytest.fixture()
def authority():
    return FakeAuthorityClient()


@pytest.fixture()
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture()
def dispatcher(session_factory, settings, metrics, clock, authority, fake_scheduler):
    return build_dispatcher(
        session_factory,
        settings=settings,
        metrics=metrics,
        clock=clock,
        client_factory=lambda company: authority,
        scheduler=fake_scheduler,
    )


@pytest.fixture()
def make_company(session_factory):
    def _make(api_key: Optional[str] = "test-api-key") -> str:
        with session_factory() as db:
            company = Company(
                name="Acme d.o.o.",
                tax_id="100000001",
                address="Knez Mihailova 1",
                city="Beograd",
                postal_code="11000",
                authority_api_key=api_key,
            )
            db.add(company)
            db.commit()
            return company.id

    return _make


@pytest.fixture()
def make_partner(session_factory):
    def _make(company_id: str, payment_terms: Optional[int] = None) -> str:
        with session_factory() as db:
            partner = Partner(
                company_id=company_id,
                name="Kupac d.o.o.",
                tax_id="200000002",
                city="Novi Sad",
                default_payment_terms=payment_terms,
            )
            db.add(partner)
            db.commit()
            return partner.id

    return _make


@pytest.fixture()
def make_invoice(session_factory, make_company, make_partner):
    counter = {"n": 0}

    def _make(
        *,
        status: str = InvoiceStatus.DRAFT.value,
        authority_id: Optional[str] = None,
        api_key: Optional[str] = "test-api-key",
        company_id: Optional[str] = None,
    ) -> str:
        counter["n"] += 1
        company_id = company_id or make_company(api_key)
        partner_id = make_partner(company_id)
        with session_factory() as db:
            invoice = Invoice(
                company_id=company_id,
                partner_id=partner_id,
                invoice_number=f"2026-{counter['n']:06d}",
                issue_date=date(2026, 3, 10),
                due_date=date(2026, 3, 25),
                currency="RSD",
                subtotal=Decimal("200.00"),
                tax_amount=Decimal("40.00"),
                total_amount=Decimal("240.00"),
                status=status,
                authority_id=authority_id,
                lines=[
                    InvoiceLine(
                        line_number=1,
                        item_name="Konsultantske usluge",
                        quantity=Decimal("2"),
                        unit="h",
                        unit_price=Decimal("100"),
                        tax_rate=Decimal("20"),
                        tax_amount=Decimal("40.00"),
                        amount=Decimal("200.00"),
                    )
                ],
            )
            db.add(invoice)
            db.commit()
            return invoice.id

    return _make
