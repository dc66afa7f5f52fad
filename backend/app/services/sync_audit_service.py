# app/services/sync_audit_service.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.logger import logger
from app.db.models import SyncAudit
from app.utils.helpers import json_safe


class SyncAuditService:
    """
    Append-only trail of sync lifecycle events.
    Rows are written inside the caller's transaction and never updated.
    """

    def register(
        self,
        db: Session,
        event_type: str,
        details: Optional[Dict[str, Any]] = None,
        case_id: Optional[int] = None,
        sync_id: Optional[int] = None,
        response_id: Optional[int] = None,
        credential_id: Optional[int] = None,
    ) -> SyncAudit:
        row = SyncAudit(
            case_id=case_id,
            process_sync_id=sync_id,
            process_response_id=response_id,
            integration_api_key_id=credential_id,
            event_type=event_type,
            event_details=json_safe(details or {}),
            observed_at=datetime.utcnow(),
        )
        db.add(row)
        db.flush()
        logger.debug(
            "sync_audit %s case=%s sync=%s", event_type, case_id, sync_id,
            extra={"event_type": event_type, "case_id": case_id, "sync_id": sync_id},
        )
        return row

    def list_for_case(self, db: Session, case_id: int, limit: int = 100) -> List[SyncAudit]:
        return (
            db.query(SyncAudit)
            .filter(SyncAudit.case_id == case_id)
            .order_by(SyncAudit.observed_at.desc(), SyncAudit.id.desc())
            .limit(limit)
            .all()
        )

    def list_for_sync(self, db: Session, sync_id: int) -> List[SyncAudit]:
        return (
            db.query(SyncAudit)
            .filter(SyncAudit.process_sync_id == sync_id)
            .order_by(SyncAudit.id.asc())
            .all()
        )


# Singleton instance
sync_audit_service = SyncAuditService()
