from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String

from sefdispatch.models.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    entity_type = Column(String(40), nullable=False, index=True)
    entity_id = Column(String(36), nullable=False, index=True)
    action = Column(String(80), nullable=False)

    old_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)

    user_id = Column(String(64), nullable=True, index=True)
