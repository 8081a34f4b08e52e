"""
Invoice Models
Subset of the back-office invoice schema the dispatch engine reads and writes.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sefdispatch.models.base import Base


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    DELIVERED = "delivered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AuthorityEnvironment(str, enum.Enum):
    DEMO = "demo"
    PRODUCTION = "production"


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    tax_id = Column(String(32), nullable=False)
    address = Column(String(300), nullable=True)
    city = Column(String(120), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(2), default="RS")

    authority_api_key = Column(String(200), nullable=True)
    authority_environment = Column(String(20), default=AuthorityEnvironment.DEMO.value)

    created_at = Column(DateTime, default=datetime.utcnow)


class Partner(Base):
    __tablename__ = "partners"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    tax_id = Column(String(32), nullable=True)
    address = Column(String(300), nullable=True)
    city = Column(String(120), nullable=True)
    postal_code = Column(String(20), nullable=True)
    default_payment_terms = Column(Integer, nullable=True)  # days


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_invoice_company_number"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=True, index=True)

    invoice_number = Column(String(40), nullable=False)
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    currency = Column(String(3), default="RSD")

    subtotal = Column(Numeric(18, 2), default=0)
    tax_amount = Column(Numeric(18, 2), default=0)
    total_amount = Column(Numeric(18, 2), default=0)

    status = Column(String(20), default=InvoiceStatus.DRAFT.value, index=True)
    authority_id = Column(String(64), nullable=True, unique=True)
    authority_status = Column(String(40), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    document = Column(Text, nullable=True)  # last submitted authority document
    note = Column(Text, nullable=True)  # dispatch diagnostics shown to the user
    remarks = Column(Text, nullable=True)  # free text printed on the document

    recurring_profile_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = relationship("Company", lazy="joined")
    partner = relationship("Partner", lazy="joined")
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="InvoiceLine.line_number",
        cascade="all, delete-orphan",
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)
    item_name = Column(String(300), nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False)
    unit = Column(String(20), default="kom")
    unit_price = Column(Numeric(18, 4), nullable=False)
    tax_rate = Column(Numeric(5, 2), nullable=False)
    tax_amount = Column(Numeric(18, 2), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)  # net line amount

    invoice = relationship("Invoice", back_populates="lines")
