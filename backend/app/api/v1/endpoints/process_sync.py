"""
Process sync endpoints: manual trigger, current status and history.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.v1.deps import get_current_user, get_tenant_case
from app.core.logger import logger
from app.db.database import get_db
from app.db.models import Case, ProcessSync, SyncRequestType, User
from app.db.schemas import (
    CaseSyncHistoryResponse,
    CaseSyncStatusResponse,
    DatasetSummary,
    ProcessResponseOut,
    ProcessSyncOut,
    SyncAuditOut,
    SyncTriggerRequest,
    SyncTriggerResponse,
    TrackingOut,
)
from app.services import process_sync_store as store
from app.services.background_jobs import shutdown_event
from app.services.case_sync_service import case_sync_service
from app.services.idempotency_service import idempotency_store
from app.services.sync_audit_service import sync_audit_service
from app.utils.exceptions import (
    ConfigurationError,
    IntegrationDisabledError,
    PersistenceError,
    ProviderApiError,
    QuotaExceededError,
    SyncError,
    SyncTimeoutError,
)

router = APIRouter()


def _status_body(case: Case, record: Optional[ProcessSync], summary: Optional[Dict[str, int]] = None) -> SyncTriggerResponse:
    return SyncTriggerResponse(
        case_id=case.id,
        process_number=case.process_number,
        tracking=TrackingOut.model_validate(case),
        sync=ProcessSyncOut.model_validate(record) if record is not None else None,
        summary=DatasetSummary(**summary) if summary else None,
    )


def sync_error_to_http(error: SyncError) -> HTTPException:
    """Translate a sync failure into the API's error contract."""
    if isinstance(error, QuotaExceededError):
        code, http_status = "quota_exceeded", status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(error, IntegrationDisabledError):
        code, http_status = "sync_disabled", status.HTTP_403_FORBIDDEN
    elif isinstance(error, ConfigurationError):
        code, http_status = "integration_not_configured", status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, ProviderApiError) and error.status == 404:
        code, http_status = "process_not_found", status.HTTP_404_NOT_FOUND
    elif isinstance(error, ProviderApiError):
        code, http_status = "provider_error", status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, PersistenceError):
        code, http_status = "persistence_failed", status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code, http_status = error.reason, status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=http_status, detail={"code": code, "message": error.message})


@router.post("/{case_id}/sync", response_model=SyncTriggerResponse)
def trigger_sync(
    options: Optional[SyncTriggerRequest] = None,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    case: Case = Depends(get_tenant_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Any:
    """
    Run a manual sync of the case against Judit and wait for the result.
    If the provider has not finished within the poll budget the sync stays
    open (202) and is completed later by webhook or the scheduled finalizer.
    """
    options = options or SyncTriggerRequest()
    endpoint = f"POST /processes/{case.id}/sync"

    cached = idempotency_store.lookup(db, idempotency_key, current_user.id, endpoint)
    if cached:
        status_code, body = cached
        return JSONResponse(body, status_code=status_code)

    try:
        outcome = case_sync_service.run_sync(
            db,
            case,
            request_type=SyncRequestType.manual,
            requested_by=current_user.id,
            with_attachments=options.with_attachments,
            on_demand=options.on_demand,
            cancel_event=shutdown_event(),
        )
    except SyncTimeoutError:
        db.expire_all()
        body = jsonable_encoder(_status_body(case, store.latest_for_case(db, case.id)))
        idempotency_store.save(db, idempotency_key, current_user.id, endpoint, status.HTTP_202_ACCEPTED, body)
        return JSONResponse(body, status_code=status.HTTP_202_ACCEPTED)
    except SyncError as e:
        raise sync_error_to_http(e)

    logger.info("Manual sync %s for case %s by user %s completed", outcome.record.id, case.id, current_user.id)
    body = _status_body(case, outcome.record, outcome.summary)
    idempotency_store.save(db, idempotency_key, current_user.id, endpoint, status.HTTP_200_OK, jsonable_encoder(body))
    return body


@router.get("/{case_id}/sync", response_model=CaseSyncStatusResponse)
def get_sync_status(
    case: Case = Depends(get_tenant_case),
    db: Session = Depends(get_db),
) -> Any:
    """Tracking handle and the latest sync record of the case."""
    record = store.latest_for_case(db, case.id)
    return CaseSyncStatusResponse(
        case_id=case.id,
        process_number=case.process_number,
        tracking=TrackingOut.model_validate(case),
        sync=ProcessSyncOut.model_validate(record) if record is not None else None,
    )


@router.get("/{case_id}/sync/history", response_model=CaseSyncHistoryResponse)
def get_sync_history(
    limit: int = Query(50, ge=1, le=200),
    case: Case = Depends(get_tenant_case),
    db: Session = Depends(get_db),
) -> Any:
    return CaseSyncHistoryResponse(
        case_id=case.id,
        syncs=[ProcessSyncOut.model_validate(r) for r in store.list_for_case(db, case.id, limit)],
        responses=[ProcessResponseOut.model_validate(r) for r in store.list_responses_for_case(db, case.id, limit)],
        audits=[SyncAuditOut.model_validate(a) for a in sync_audit_service.list_for_case(db, case.id, limit)],
    )
