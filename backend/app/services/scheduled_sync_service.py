"""
Scheduled (cron) process sync.

Each run does two things, in order:
  1. finalize requests the provider has finished but whose results were never
     applied: records completed by webhook, and records left in processing
     when polling ran out of attempts
  2. run a cron sync for the cases that are due (never synced, or last synced
     more than SCHEDULED_SYNC_STALE_HOURS ago), oldest first, skipping cases
     that already have an open request and tenants whose plan has sync off

Called by the APScheduler job in background_jobs and by the worker endpoint.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logger import logger
from app.db.models import Case, Plan, ProcessSync, SyncRequestType, SyncStatus, Tenant
from app.services.case_sync_service import CaseSyncService, case_sync_service
from app.utils.exceptions import IntegrationDisabledError, QuotaExceededError, SyncError, SyncTimeoutError

OPEN_STATUSES = (SyncStatus.pending, SyncStatus.processing)


def _poll_budget() -> timedelta:
    seconds = settings.JUDIT_POLL_INTERVAL_SECONDS * settings.JUDIT_POLL_MAX_ATTEMPTS
    return timedelta(seconds=max(seconds, 60))


def select_finalizable(db: Session, limit: int, now: Optional[datetime] = None) -> List[ProcessSync]:
    now = now or datetime.utcnow()
    stale_before = now - _poll_budget()
    return (
        db.query(ProcessSync)
        .filter(
            ProcessSync.request_type != SyncRequestType.system,
            ProcessSync.remote_request_id.isnot(None),
            ProcessSync.case_id.isnot(None),
            or_(
                and_(ProcessSync.status == SyncStatus.completed, ProcessSync.dataset_pending.is_(True)),
                and_(ProcessSync.status == SyncStatus.processing, ProcessSync.updated_at < stale_before),
            ),
        )
        .order_by(ProcessSync.id.asc())
        .limit(limit)
        .all()
    )


def select_due_cases(db: Session, limit: int, now: Optional[datetime] = None) -> List[Case]:
    now = now or datetime.utcnow()
    stale_before = now - timedelta(hours=max(settings.SCHEDULED_SYNC_STALE_HOURS, 1))
    has_open_request = exists().where(
        ProcessSync.case_id == Case.id,
        ProcessSync.status.in_(OPEN_STATUSES),
        ProcessSync.request_type != SyncRequestType.system,
    )
    return (
        db.query(Case)
        .join(Tenant, Tenant.id == Case.tenant_id)
        .join(Plan, Plan.id == Tenant.plan_id)
        .filter(
            Plan.sync_enabled.is_(True),
            Case.process_number != "",
            or_(Case.last_synced_at.is_(None), Case.last_synced_at < stale_before),
            ~has_open_request,
        )
        .order_by(Case.last_synced_at.asc().nullsfirst(), Case.id.asc())
        .limit(limit)
        .all()
    )


def run_due(
    db: Session,
    batch_size: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    service: Optional[CaseSyncService] = None,
) -> Dict[str, Any]:
    service = service or case_sync_service
    batch_size = batch_size or settings.SCHEDULED_SYNC_BATCH_SIZE
    started_at = datetime.utcnow().isoformat()
    summary: Dict[str, Any] = {
        "ok": True,
        "startedAt": started_at,
        "processed": 0,
        "completed": 0,
        "failed": 0,
        "pending": 0,
        "skipped": 0,
        "finalized": 0,
    }

    # ── 1. Finalize finished remote requests ──────────────────────────────────
    for record in select_finalizable(db, batch_size):
        if cancel_event is not None and cancel_event.is_set():
            break
        try:
            if record.status == SyncStatus.completed:
                service.complete_remote_request(db, record)
                summary["finalized"] += 1
            else:
                outcome = service.resume_open_request(db, record)
                if outcome.status != SyncStatus.processing:
                    summary["finalized"] += 1
        except SyncError as e:
            summary["failed"] += 1
            logger.warning("Finalizing sync %s failed: %s", record.id, e)

    # ── 2. Cron syncs for due cases ───────────────────────────────────────────
    for case in select_due_cases(db, batch_size):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Scheduled sync interrupted by shutdown")
            break
        summary["processed"] += 1
        try:
            service.run_sync(db, case, request_type=SyncRequestType.cron, cancel_event=cancel_event)
            summary["completed"] += 1
        except (QuotaExceededError, IntegrationDisabledError):
            summary["skipped"] += 1
        except SyncTimeoutError:
            summary["pending"] += 1
        except SyncError as e:
            summary["failed"] += 1
            logger.warning("Scheduled sync for case %s failed: %s", case.id, e)
        except Exception:
            summary["failed"] += 1
            logger.exception("Scheduled sync for case %s crashed", case.id)

    summary["finishedAt"] = datetime.utcnow().isoformat()
    logger.info(
        "Scheduled sync run: processed=%s completed=%s failed=%s pending=%s skipped=%s finalized=%s",
        summary["processed"], summary["completed"], summary["failed"],
        summary["pending"], summary["skipped"], summary["finalized"],
    )
    return summary
