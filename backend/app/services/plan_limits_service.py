"""
Plan limits for a company (tenant) and usage counters checked against them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.db.models import Case, Plan, ProcessQueryLog, ProcessSync, SyncRequestType, Tenant
from app.utils.helpers import month_start

QUOTA_REQUEST_TYPES = (SyncRequestType.manual, SyncRequestType.cron)


@dataclass(frozen=True)
class PlanLimits:
    plan_id: Optional[int]
    sync_enabled: Optional[bool]
    sync_quota: Optional[int]


def fetch_plan_limits_for_company(db: Session, tenant_id: int) -> Optional[PlanLimits]:
    """Returns None when the company has no plan."""
    row = (
        db.query(Plan)
        .join(Tenant, Tenant.plan_id == Plan.id)
        .filter(Tenant.id == tenant_id)
        .first()
    )
    if row is None:
        return None
    return PlanLimits(plan_id=row.id, sync_enabled=row.sync_enabled, sync_quota=row.sync_quota)


def _process_sync_usage(db: Session, tenant_id: int, since: datetime, limit: Optional[int]) -> int:
    query = db.query(ProcessSync.id).filter(
        ProcessSync.tenant_id == tenant_id,
        ProcessSync.remote_request_id.isnot(None),
        ProcessSync.request_type.in_(QUOTA_REQUEST_TYPES),
        ProcessSync.requested_at >= since,
    )
    if limit is not None:
        return len(query.limit(limit).all())
    return query.count()


def _legacy_query_usage(db: Session, tenant_id: int, since: datetime, limit: Optional[int]) -> int:
    query = (
        db.query(ProcessQueryLog.id)
        .join(Case, Case.id == ProcessQueryLog.case_id)
        .filter(
            Case.tenant_id == tenant_id,
            ProcessQueryLog.process_sync_id.is_(None),
            ProcessQueryLog.queried_at >= since,
        )
    )
    if limit is not None:
        return len(query.limit(limit).all())
    return query.count()


def count_company_resource(
    db: Session,
    tenant_id: int,
    resource: str,
    max_allowed: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Count a metered resource for the current month. When max_allowed is given
    the count stops there, which is all a quota check needs.
    """
    if resource != "process_sync":
        raise ValueError(f"Unknown metered resource: {resource}")

    since = month_start(now)
    used = _process_sync_usage(db, tenant_id, since, max_allowed)
    if max_allowed is not None and used >= max_allowed:
        return max_allowed

    remaining = None if max_allowed is None else max_allowed - used
    used += _legacy_query_usage(db, tenant_id, since, remaining)
    if max_allowed is not None:
        return min(used, max_allowed)
    return used
