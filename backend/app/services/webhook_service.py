"""
Judit webhook reconciliation.

A delivery is stored verbatim, matched to a case (process number first, then
tracking id), and folded into the matching Sync Record under the forward-only
status rule. Everything happens in one transaction. Normalization is never run
here: a request reported complete is flagged for the scheduled finalizer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from app.db.models import Case, ProcessSync, ResponseSource, SyncRequestType, SyncStatus
from app.services import process_sync_store as store
from app.services.sync_audit_service import sync_audit_service
from app.utils.validators import validate_webhook_payload

logger = logging.getLogger(__name__)

DELIVERY_HEADERS = ("x-delivery-id", "x-message-id")
DELIVERY_KEYS = ("delivery_id", "deliveryId")


@dataclass
class WebhookResult:
    status: str  # ok | ignored
    case_id: Optional[int] = None
    sync_id: Optional[int] = None
    response_id: Optional[int] = None
    duplicate: bool = False
    status_changed: bool = False


def _text(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def extract_request_info(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Any]:
    """(request id, request status, result) from the nested or flat payload shape."""
    nested = payload.get("request")
    if not isinstance(nested, dict):
        nested = payload.get("request_info")
    if isinstance(nested, dict):
        request_id = _text(nested.get("id")) or _text(nested.get("request_id")) or _text(payload.get("request_id"))
        status = _text(nested.get("status")) or _text(payload.get("request_status"))
        result = nested.get("result", payload.get("result"))
    else:
        request_id = _text(payload.get("request_id"))
        status = _text(payload.get("request_status"))
        result = payload.get("result")
    return request_id, status, result


def resolve_delivery_id(payload: Dict[str, Any], headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if headers:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        for key in DELIVERY_HEADERS:
            value = _text(lowered.get(key))
            if value:
                return value
    for key in DELIVERY_KEYS:
        value = _text(payload.get(key))
        if value:
            return value
    return None


class WebhookService:
    def _find_case(self, db: Session, process_number: Optional[str], tracking_id: Optional[str]) -> Optional[Case]:
        if process_number:
            case = db.query(Case).filter(Case.process_number == process_number).order_by(Case.id).first()
            if case is not None:
                return case
        if tracking_id:
            return db.query(Case).filter(Case.tracking_id == tracking_id).order_by(Case.id).first()
        return None

    def handle(
        self,
        db: Session,
        payload: Any,
        headers: Optional[Mapping[str, str]] = None,
        allow_regression: Optional[bool] = None,
    ) -> WebhookResult:
        payload = validate_webhook_payload(payload)
        try:
            result = self._reconcile(db, payload, headers, allow_regression)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(
            "Judit webhook %s case=%s sync=%s duplicate=%s",
            result.status, result.case_id, result.sync_id, result.duplicate,
        )
        return result

    def _reconcile(
        self,
        db: Session,
        payload: Dict[str, Any],
        headers: Optional[Mapping[str, str]],
        allow_regression: Optional[bool],
    ) -> WebhookResult:
        now = datetime.utcnow()
        tracking_id = _text(payload.get("tracking_id"))
        process_number = _text(payload.get("process_number"))
        hour_range = _text(payload.get("hour_range"))
        tracking_status = _text(payload.get("status")) or _text(payload.get("event_status"))
        request_id, request_status, request_result = extract_request_info(payload)
        delivery_id = resolve_delivery_id(payload, headers)
        stored_headers = {k: v for k, v in (headers or {}).items() if str(k).lower() != "authorization"}

        case = self._find_case(db, process_number, tracking_id)
        if case is None:
            response, duplicate = store.record_response(
                db, ResponseSource.webhook, payload,
                delivery_id=delivery_id, status_code=202, headers=stored_headers,
            )
            sync_audit_service.register(
                db, "webhook_received",
                {
                    "matched": False,
                    "trackingId": tracking_id,
                    "processNumber": process_number,
                    "requestId": request_id,
                    "duplicate": duplicate,
                },
                response_id=response.id,
            )
            return WebhookResult(status="ignored", response_id=response.id, duplicate=duplicate)

        case.tracking_id = tracking_id or case.tracking_id
        case.tracking_hour_range = hour_range or case.tracking_hour_range
        case.tracking_status = tracking_status or case.tracking_status
        case.last_webhook_at = now

        record: Optional[ProcessSync] = None
        created = False
        if request_id:
            record = store.find_by_remote_id(db, request_id, for_update=True)
            if record is None:
                record = store.register_process_sync(
                    db,
                    case_id=case.id,
                    tenant_id=case.tenant_id,
                    request_type=SyncRequestType.webhook,
                    remote_request_id=request_id,
                    metadata={"source": "webhook", "processNumber": case.process_number},
                )
                created = True

        response, duplicate = store.record_response(
            db, ResponseSource.webhook, payload,
            case_id=case.id,
            sync_id=record.id if record is not None else None,
            credential_id=record.integration_api_key_id if record is not None else None,
            delivery_id=delivery_id,
            status_code=200,
            headers=stored_headers,
        )
        credential_id = record.integration_api_key_id if record is not None else None
        sync_id = record.id if record is not None else None

        sync_audit_service.register(
            db, "webhook_received",
            {
                "matched": True,
                "trackingId": tracking_id,
                "requestId": request_id,
                "status": request_status or tracking_status,
                "duplicate": duplicate,
                "createdSync": created,
            },
            case_id=case.id, sync_id=sync_id, response_id=response.id, credential_id=credential_id,
        )
        if duplicate:
            return WebhookResult(
                status="ok", case_id=case.id, sync_id=sync_id, response_id=response.id, duplicate=True,
            )

        changed = False
        if record is not None:
            metadata = dict(record.metadata_json or {})
            increments = _as_list(payload.get("increments"))
            store.merge_metadata(record, {
                "lastWebhookAt": now,
                "webhookCount": int(metadata.get("webhookCount") or 0) + 1,
                "incrementCount": int(metadata.get("incrementCount") or 0) + len(increments),
                "remoteStatus": request_status,
                "result": request_result,
                "trackingStatus": tracking_status,
            })

            target = store.map_remote_status(request_status)
            if target is not None:
                previous = SyncStatus(record.status)
                changed = store.transition_status(
                    db, record, target,
                    reason=f"Judit reported '{request_status}'" if target in (SyncStatus.failed, SyncStatus.cancelled) else None,
                    allow_regression=allow_regression,
                )
                if changed:
                    if target == SyncStatus.completed:
                        record.dataset_pending = True
                    sync_audit_service.register(
                        db, "status_update",
                        {"requestId": request_id, "from": previous.value, "status": target.value, "source": "webhook"},
                        case_id=case.id, sync_id=record.id, response_id=response.id, credential_id=credential_id,
                    )
                elif previous != target:
                    sync_audit_service.register(
                        db, "status_update_ignored",
                        {"requestId": request_id, "current": previous.value, "incoming": target.value, "source": "webhook"},
                        case_id=case.id, sync_id=record.id, response_id=response.id, credential_id=credential_id,
                    )

        for increment in _as_list(payload.get("increments")):
            event_type = _text(increment.get("type")) if isinstance(increment, dict) else None
            sync_audit_service.register(
                db, event_type or "increment",
                {"requestId": request_id, "payload": increment},
                case_id=case.id, sync_id=sync_id, response_id=response.id, credential_id=credential_id,
            )

        return WebhookResult(
            status="ok", case_id=case.id, sync_id=sync_id, response_id=response.id, status_changed=changed,
        )


webhook_service = WebhookService()
