from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from laptop_ledger.models.ledger_models import AuditLog
from laptop_ledger.services.store_io import session_scope


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    details: str | None = None,
    user_id: str | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=str(entity_id),
            Action=action,
            Details=(details or "")[:2000] or None,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


class AuditTrail:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        details: str | None = None,
        user_id: str | None = None,
    ) -> None:
        with session_scope(self.session_factory) as db:
            log_audit(db, entity_type, entity_id, action, details, user_id=user_id)

    def list_actions(self, action: str | None = None, limit: int = 100) -> list[dict]:
        stmt = select(AuditLog)
        if action:
            stmt = stmt.where(AuditLog.Action == action)
        stmt = stmt.order_by(AuditLog.AuditID.desc()).limit(max(limit, 1))
        with session_scope(self.session_factory) as db:
            rows = db.execute(stmt).scalars().all()
            return [
                {
                    "auditID": row.AuditID,
                    "entityType": row.EntityType,
                    "entityID": row.EntityID,
                    "action": row.Action,
                    "details": row.Details,
                    "userID": row.UserID,
                    "createdAt": row.CreatedAt,
                }
                for row in rows
            ]
