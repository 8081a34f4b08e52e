"""
Audit Service
Persists entity transitions alongside the change that caused them.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from sefdispatch.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        *,
        old_data: Optional[Dict[str, Any]] = None,
        new_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> AuditLog:
        """
        Add an audit row to the caller's session.

        The row is committed together with the caller's transaction.
        """
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_data=old_data,
            new_data=new_data,
            user_id=user_id,
        )
        self.session.add(entry)
        return entry

    def history(self, entity_type: str, entity_id: str) -> List[AuditLog]:
        return (
            self.session.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )
