"""
Sync Record and Sync Response storage.

Status only moves forward (pending < processing < completed/failed/cancelled)
unless regression is explicitly allowed. Metadata merges are key-level and
never replace a known value with null.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import (
    ProcessResponse,
    ProcessSync,
    ResponseSource,
    SyncRequestType,
    SyncStatus,
    TERMINAL_SYNC_STATUSES,
)
from app.utils.helpers import json_safe

logger = logging.getLogger(__name__)

STATUS_RANK = {
    SyncStatus.pending: 0,
    SyncStatus.processing: 1,
    SyncStatus.completed: 2,
    SyncStatus.failed: 2,
    SyncStatus.cancelled: 2,
}

REMOTE_STATUS_MAP = {
    "pending": SyncStatus.pending,
    "created": SyncStatus.pending,
    "queued": SyncStatus.pending,
    "processing": SyncStatus.processing,
    "running": SyncStatus.processing,
    "in_progress": SyncStatus.processing,
    "completed": SyncStatus.completed,
    "done": SyncStatus.completed,
    "finished": SyncStatus.completed,
    "failed": SyncStatus.failed,
    "error": SyncStatus.failed,
    "cancelled": SyncStatus.cancelled,
    "canceled": SyncStatus.cancelled,
}


def map_remote_status(value: Any) -> Optional[SyncStatus]:
    if not isinstance(value, str):
        return None
    return REMOTE_STATUS_MAP.get(value.strip().lower())


def can_transition(current: SyncStatus, target: SyncStatus, allow_regression: bool = False) -> bool:
    if current == target:
        return False
    if allow_regression:
        return True
    if current in TERMINAL_SYNC_STATUSES:
        return False
    return STATUS_RANK[target] > STATUS_RANK[current]


def register_process_sync(
    db: Session,
    case_id: Optional[int],
    tenant_id: Optional[int],
    request_type: SyncRequestType,
    requested_by: Optional[int] = None,
    remote_request_id: Optional[str] = None,
    credential_id: Optional[int] = None,
    request_payload: Optional[Dict[str, Any]] = None,
    request_headers: Optional[Dict[str, Any]] = None,
    status: SyncStatus = SyncStatus.pending,
    metadata: Optional[Dict[str, Any]] = None,
) -> ProcessSync:
    record = ProcessSync(
        case_id=case_id,
        tenant_id=tenant_id,
        request_type=request_type,
        requested_by=requested_by,
        requested_at=datetime.utcnow(),
        remote_request_id=remote_request_id,
        integration_api_key_id=credential_id,
        request_payload=json_safe(request_payload) if request_payload is not None else None,
        request_headers=request_headers,
        status=status,
        metadata_json=json_safe(metadata or {}),
    )
    if status in TERMINAL_SYNC_STATUSES:
        record.completed_at = datetime.utcnow()
    db.add(record)
    db.flush()
    return record


def merge_metadata(record: ProcessSync, updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(record.metadata_json or {})
    for key, value in updates.items():
        if value is None:
            continue
        merged[key] = json_safe(value)
    record.metadata_json = merged
    return merged


def transition_status(
    db: Session,
    record: ProcessSync,
    target: SyncStatus,
    reason: Optional[str] = None,
    allow_regression: Optional[bool] = None,
) -> bool:
    """Apply target status if the lifecycle allows it. Returns whether it changed."""
    if allow_regression is None:
        allow_regression = settings.SYNC_ALLOW_STATUS_REGRESSION

    current = SyncStatus(record.status)
    if not can_transition(current, target, allow_regression):
        if current != target:
            logger.info(
                "Ignoring status %s -> %s for sync %s", current.value, target.value, record.id,
            )
        return False

    record.status = target
    record.status_reason = reason
    record.completed_at = datetime.utcnow() if target in TERMINAL_SYNC_STATUSES else None
    db.flush()
    return True


def find_by_remote_id(db: Session, remote_request_id: str, for_update: bool = False) -> Optional[ProcessSync]:
    query = db.query(ProcessSync).filter(ProcessSync.remote_request_id == remote_request_id)
    if for_update:
        query = query.with_for_update()
    return query.order_by(ProcessSync.id.desc()).first()


def latest_for_case(db: Session, case_id: int, exclude_system: bool = True) -> Optional[ProcessSync]:
    query = db.query(ProcessSync).filter(ProcessSync.case_id == case_id)
    if exclude_system:
        query = query.filter(ProcessSync.request_type != SyncRequestType.system)
    return query.order_by(ProcessSync.requested_at.desc(), ProcessSync.id.desc()).first()


def list_for_case(db: Session, case_id: int, limit: int = 50) -> List[ProcessSync]:
    return (
        db.query(ProcessSync)
        .filter(ProcessSync.case_id == case_id)
        .order_by(ProcessSync.requested_at.desc(), ProcessSync.id.desc())
        .limit(limit)
        .all()
    )


def list_responses_for_case(db: Session, case_id: int, limit: int = 50) -> List[ProcessResponse]:
    return (
        db.query(ProcessResponse)
        .filter(ProcessResponse.case_id == case_id)
        .order_by(ProcessResponse.received_at.desc(), ProcessResponse.id.desc())
        .limit(limit)
        .all()
    )


def record_response(
    db: Session,
    source: ResponseSource,
    payload: Any,
    case_id: Optional[int] = None,
    sync_id: Optional[int] = None,
    credential_id: Optional[int] = None,
    delivery_id: Optional[str] = None,
    status_code: Optional[int] = None,
    headers: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> Tuple[ProcessResponse, bool]:
    """
    Store a raw provider response. A delivery id already stored for the same
    source is not inserted again; the existing row is returned with True.
    """
    if delivery_id:
        existing = (
            db.query(ProcessResponse)
            .filter(ProcessResponse.source == source, ProcessResponse.delivery_id == delivery_id)
            .first()
        )
        if existing is not None:
            return existing, True

    row = ProcessResponse(
        case_id=case_id,
        process_sync_id=sync_id,
        integration_api_key_id=credential_id,
        delivery_id=delivery_id,
        source=source,
        status_code=status_code,
        received_at=datetime.utcnow(),
        payload=json_safe(payload),
        headers=headers,
        error_message=error_message,
    )
    db.add(row)
    db.flush()
    return row, False
