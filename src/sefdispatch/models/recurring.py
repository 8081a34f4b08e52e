"""
Recurring invoice profiles.
The line-item template is a snapshot so past generations stay reproducible.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from sefdispatch.models.base import Base


class RecurringFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class RecurringStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecurringInvoiceProfile(Base):
    __tablename__ = "recurring_invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False)

    frequency = Column(String(20), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=False, index=True)
    last_run_at = Column(DateTime, nullable=True)
    status = Column(String(20), default=RecurringStatus.ACTIVE.value, index=True)

    # [{"name", "quantity", "unit_price", "tax_rate", "unit"}]
    items = Column(JSON, nullable=False, default=list)
    currency = Column(String(3), default="RSD")
    note = Column(Text, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    partner = relationship("Partner", lazy="joined")
