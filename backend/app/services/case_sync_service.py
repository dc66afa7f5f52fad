from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.logger import logger
from app.db.models import (
    Case,
    ProcessQueryLog,
    ProcessSync,
    ResponseSource,
    SyncRequestType,
    SyncStatus,
)
from app.services import process_sync_store as store
from app.services.case_dataset_service import case_dataset_service
from app.services.credential_service import ResolvedCredential, credential_service
from app.services.judit_client import JuditClient, remote_status_of
from app.services.processo_normalizer import (
    application_errors,
    entries_from_pages,
    select_best_dataset,
)
from app.services.quota_service import ensure_sync_allowed
from app.services.sync_audit_service import sync_audit_service
from app.utils.helpers import to_optional_string
from app.utils.exceptions import (
    ConfigurationError,
    IntegrationDisabledError,
    NormalizationError,
    PersistenceError,
    ProviderApiError,
    QuotaExceededError,
    SyncError,
    SyncTimeoutError,
)

# Denials are recorded by code; everything else by message.
POLICY_ERRORS = (QuotaExceededError, IntegrationDisabledError, ConfigurationError)


@dataclass
class SyncOutcome:
    record: ProcessSync
    status: SyncStatus
    summary: Optional[Dict[str, int]] = None


def _remote_request_id(response: Dict[str, Any]) -> Optional[str]:
    for key in ("request_id", "id"):
        value = response.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    request = response.get("request")
    if isinstance(request, dict):
        return _remote_request_id(request)
    return None


def _remote_failure_message(status: str, payload: Dict[str, Any]) -> str:
    for source in (payload, payload.get("request") if isinstance(payload.get("request"), dict) else {}):
        for key in ("message", "error", "status_reason"):
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return f"Judit request finished with status '{status}'"


class CaseSyncService:
    def __init__(self, client_factory: Callable[[ResolvedCredential], JuditClient] = JuditClient) -> None:
        self.client_factory = client_factory

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def _log_query(self, db: Session, case_id: int, sync_id: Optional[int], success: bool, details: str) -> None:
        db.add(ProcessQueryLog(
            case_id=case_id,
            process_sync_id=sync_id,
            success=success,
            details=details,
            queried_at=datetime.utcnow(),
        ))

    def _record_failure(self, db: Session, sync_id: int, case_id: int, error: Exception) -> None:
        """Write failed + sync_failed in a fresh transaction, after rolling back the open one."""
        db.rollback()
        kind = error.reason if isinstance(error, SyncError) else "unexpected"
        message = error.message if isinstance(error, SyncError) else str(error) or error.__class__.__name__
        reason = kind if isinstance(error, POLICY_ERRORS) else message

        try:
            record = db.get(ProcessSync, sync_id)
            # A webhook may have marked the record completed before its dataset was applied.
            awaiting_dataset = record.status == SyncStatus.completed and record.dataset_pending
            store.transition_status(
                db, record, SyncStatus.failed, reason=reason,
                allow_regression=True if awaiting_dataset else None,
            )
            record.dataset_pending = False
            store.merge_metadata(record, {"error": {"kind": kind, "message": message}})
            details: Dict[str, Any] = {"reason": kind, "message": message, "requestId": record.remote_request_id}
            if isinstance(error, ProviderApiError):
                details["httpStatus"] = error.status
            sync_audit_service.register(
                db, "sync_failed", details,
                case_id=case_id, sync_id=sync_id, credential_id=record.integration_api_key_id,
            )
            self._log_query(db, case_id, sync_id, False, message)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record failure of sync %s", sync_id)

        logger.warning(
            "Sync %s for case %s failed: %s (%s)", sync_id, case_id, message, kind,
            extra={"sync_id": sync_id, "case_id": case_id, "reason": kind},
        )

    # ── Tracking ─────────────────────────────────────────────────────────────

    def ensure_tracking(
        self,
        db: Session,
        case: Case,
        client: JuditClient,
        credential: ResolvedCredential,
        sync_id: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Renew the case's provider tracking (or create it). A tracking failure
        is audited on the sync record and does not stop the sync.
        """
        action = "renew-tracking" if case.tracking_id else "create-tracking"
        try:
            if case.tracking_id:
                try:
                    response = client.renew_tracking(case.tracking_id, case.process_number)
                except ProviderApiError as e:
                    logger.warning("Tracking renew failed for case %s, creating a new one: %s", case.id, e)
                    action = "create-tracking"
                    response = client.create_tracking(case.process_number)
            else:
                response = client.create_tracking(case.process_number)
        except ProviderApiError as e:
            sync_audit_service.register(
                db, "tracking_failed",
                {"action": action, "message": e.message, "httpStatus": e.status},
                case_id=case.id, sync_id=sync_id, credential_id=credential.credential_id,
            )
            db.commit()
            return None

        tracking_id = response.get("tracking_id")
        hour_range = response.get("hour_range") if isinstance(response.get("hour_range"), str) else None
        status = response.get("status") or "active"

        case.tracking_id = tracking_id or case.tracking_id
        case.tracking_hour_range = hour_range or case.tracking_hour_range
        case.tracking_status = status

        tracking_record = store.register_process_sync(
            db,
            case_id=case.id,
            tenant_id=case.tenant_id,
            request_type=SyncRequestType.system,
            remote_request_id=tracking_id,
            credential_id=credential.credential_id,
            request_payload={"action": action, "process_number": case.process_number},
            request_headers=client.redacted_headers(),
            status=SyncStatus.completed,
            metadata={
                "source": "ensure_tracking",
                "remoteStatus": status,
                "hourRange": hour_range,
                "recurrence": response.get("recurrence"),
                "trackingId": tracking_id,
            },
        )
        sync_audit_service.register(
            db, "tracking_synced",
            {"trackingId": tracking_id, "status": status, "hourRange": hour_range, "action": action},
            case_id=case.id, sync_id=tracking_record.id, credential_id=credential.credential_id,
        )
        db.commit()
        return response

    # ── Completion ───────────────────────────────────────────────────────────

    def _store_pages(
        self,
        db: Session,
        case: Case,
        record: ProcessSync,
        pages: List[Dict[str, Any]],
    ) -> None:
        stored = 0
        for page in pages:
            for entry in page.get("page_data") or []:
                if not isinstance(entry, dict):
                    continue
                _, duplicate = store.record_response(
                    db,
                    ResponseSource.polling,
                    entry,
                    case_id=case.id,
                    sync_id=record.id,
                    credential_id=record.integration_api_key_id,
                    delivery_id=to_optional_string(entry.get("response_id")),
                    status_code=200,
                    headers={
                        "origin": entry.get("origin"),
                        "originId": entry.get("origin_id"),
                        "responseType": entry.get("response_type"),
                    },
                )
                stored += 0 if duplicate else 1
        sync_audit_service.register(
            db, "responses_polled",
            {"requestId": record.remote_request_id, "pages": len(pages), "stored": stored, "source": "polling"},
            case_id=case.id, sync_id=record.id, credential_id=record.integration_api_key_id,
        )

    def _complete(
        self,
        db: Session,
        case: Case,
        record: ProcessSync,
        pages: List[Dict[str, Any]],
        with_attachments: bool,
    ) -> Dict[str, int]:
        """Store pages, normalize, replace the dataset and close the record in one transaction."""
        self._store_pages(db, case, record, pages)

        entries = entries_from_pages(pages)
        try:
            dataset = select_best_dataset(entries, case.process_number)
        except NormalizationError:
            errors = application_errors(entries)
            if errors:
                raise NormalizationError(errors[0])
            raise

        try:
            summary = case_dataset_service.replace_case_dataset(db, case, dataset, with_attachments=with_attachments)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store case dataset: {e}") from e

        store.transition_status(db, record, SyncStatus.completed)
        record.dataset_pending = False
        store.merge_metadata(record, {
            "summary": summary,
            "remoteStatus": "completed",
            "responsePages": len(pages),
            "processNumber": case.process_number,
        })
        sync_audit_service.register(
            db, "sync_completed",
            {"requestId": record.remote_request_id, "summary": summary},
            case_id=case.id, sync_id=record.id, credential_id=record.integration_api_key_id,
        )
        self._log_query(db, case.id, record.id, True, "Judit sync completed")
        db.commit()

        logger.info(
            "Sync %s for case %s completed: %s", record.id, case.id, summary,
            extra={"sync_id": record.id, "case_id": case.id},
        )
        return summary

    # ── Entry points ─────────────────────────────────────────────────────────

    def run_sync(
        self,
        db: Session,
        case: Case,
        request_type: SyncRequestType = SyncRequestType.manual,
        requested_by: Optional[int] = None,
        with_attachments: bool = True,
        on_demand: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncOutcome:
        """
        Full sync of one case: quota, credential, tracking, request, poll,
        fetch, normalize, persist. Raises the SyncError that stopped it; a
        SyncTimeoutError leaves the record open for the webhook or the
        scheduled finalizer.
        """
        case_id = case.id
        request_payload = JuditClient.build_request_payload(
            case.process_number, with_attachments=with_attachments, on_demand=on_demand,
        )
        record = store.register_process_sync(
            db,
            case_id=case_id,
            tenant_id=case.tenant_id,
            request_type=request_type,
            requested_by=requested_by,
            request_payload=request_payload,
            metadata={"processNumber": case.process_number},
        )
        sync_audit_service.register(
            db, "sync_requested",
            {"requestType": request_type.value, "requestedBy": requested_by, "withAttachments": with_attachments},
            case_id=case_id, sync_id=record.id,
        )
        db.commit()
        sync_id = record.id

        try:
            ensure_sync_allowed(db, case.tenant_id)
            credential = credential_service.resolve(db, case.tenant_id)
            credential_service.mark_used(db, credential)
            record.integration_api_key_id = credential.credential_id
            db.commit()

            with self.client_factory(credential) as client:
                self.ensure_tracking(db, case, client, credential, sync_id=sync_id)

                response = client.create_request(request_payload)
                remote_id = _remote_request_id(response)
                if not remote_id:
                    raise ProviderApiError("Judit did not return a request id", body=response)

                record.remote_request_id = remote_id
                record.request_headers = client.redacted_headers()
                store.transition_status(db, record, SyncStatus.processing)
                store.merge_metadata(record, {"remoteStatus": remote_status_of(response) or None})
                sync_audit_service.register(
                    db, "request_submitted",
                    {"requestId": remote_id, "status": remote_status_of(response) or None},
                    case_id=case_id, sync_id=sync_id, credential_id=credential.credential_id,
                )
                db.commit()

                try:
                    outcome = client.poll_request(remote_id, cancel_event=cancel_event)
                except SyncTimeoutError as e:
                    store.merge_metadata(record, {"remoteStatus": e.last_status, "pollAttempts": e.attempts})
                    sync_audit_service.register(
                        db, "poll_timeout",
                        {"requestId": remote_id, "attempts": e.attempts, "lastStatus": e.last_status, "reason": e.reason},
                        case_id=case_id, sync_id=sync_id, credential_id=credential.credential_id,
                    )
                    db.commit()
                    logger.warning("Sync %s left open: %s", sync_id, e.message)
                    raise

                store.merge_metadata(record, {"remoteStatus": outcome.status, "pollAttempts": outcome.attempts})
                sync_audit_service.register(
                    db, "status_update",
                    {"requestId": remote_id, "status": outcome.status, "attempts": outcome.attempts, "source": "polling"},
                    case_id=case_id, sync_id=sync_id, credential_id=credential.credential_id,
                )
                db.commit()

                if outcome.status != "completed":
                    raise ProviderApiError(_remote_failure_message(outcome.status, outcome.payload), body=outcome.payload)

                pages = client.fetch_all_result_pages(remote_id)
                summary = self._complete(db, case, record, pages, with_attachments)
        except SyncTimeoutError:
            raise
        except Exception as e:
            self._record_failure(db, sync_id, case_id, e)
            raise

        return SyncOutcome(record=record, status=SyncStatus(record.status), summary=summary)

    def complete_remote_request(self, db: Session, record: ProcessSync) -> SyncOutcome:
        """
        Fetch and apply the results of a request that finished after polling
        gave up (or that was reported complete by webhook).
        """
        case = db.get(Case, record.case_id)
        sync_id = record.id
        payload = record.request_payload or {}
        with_attachments = payload.get("with_attachments", True) is not False

        try:
            credential = credential_service.resolve(db, case.tenant_id)
            with self.client_factory(credential) as client:
                pages = client.fetch_all_result_pages(record.remote_request_id)
                summary = self._complete(db, case, record, pages, with_attachments)
        except Exception as e:
            self._record_failure(db, sync_id, case.id, e)
            raise

        return SyncOutcome(record=record, status=SyncStatus(record.status), summary=summary)

    def resume_open_request(self, db: Session, record: ProcessSync) -> SyncOutcome:
        """
        One status check for a record left in processing; completes or fails
        it when the provider is done. A status check the provider rejects
        outright (4xx) fails the record; a transient one (network, 429, 5xx)
        is audited and retried after the next poll window.
        """
        case = db.get(Case, record.case_id)
        sync_id = record.id
        try:
            credential = credential_service.resolve(db, case.tenant_id)
            with self.client_factory(credential) as client:
                payload = client.get_request_status(record.remote_request_id)
        except ProviderApiError as e:
            if e.status is not None and e.status != 429 and e.status < 500:
                self._record_failure(db, sync_id, case.id, e)
                raise
            store.merge_metadata(record, {"lastStatusCheckError": e.message})
            sync_audit_service.register(
                db, "status_check_failed",
                {"requestId": record.remote_request_id, "message": e.message, "httpStatus": e.status},
                case_id=case.id, sync_id=sync_id, credential_id=record.integration_api_key_id,
            )
            db.commit()
            raise
        except SyncError as e:
            self._record_failure(db, sync_id, case.id, e)
            raise

        status = remote_status_of(payload)
        if status == "completed":
            return self.complete_remote_request(db, record)
        if status in ("failed", "cancelled"):
            error = ProviderApiError(_remote_failure_message(status, payload), body=payload)
            self._record_failure(db, record.id, case.id, error)
            return SyncOutcome(record=record, status=SyncStatus(record.status))
        return SyncOutcome(record=record, status=SyncStatus(record.status))


case_sync_service = CaseSyncService()
