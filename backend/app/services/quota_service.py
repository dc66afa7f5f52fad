"""
Sync quota governor. Runs before any provider call and has no side effects.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.services.plan_limits_service import (
    PlanLimits,
    count_company_resource,
    fetch_plan_limits_for_company,
)
from app.utils.exceptions import IntegrationDisabledError, QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None  # disabled | quota
    quota: Optional[int] = None
    used: int = 0

    @property
    def remaining(self) -> Optional[int]:
        if self.quota is None:
            return None
        return max(self.quota - self.used, 0)


def evaluate_sync_quota(limits: Optional[PlanLimits], used: int) -> QuotaDecision:
    if limits is None or not limits.sync_enabled:
        return QuotaDecision(allowed=False, reason="disabled")
    if limits.sync_quota is None:
        return QuotaDecision(allowed=True, used=used)
    quota = max(int(limits.sync_quota), 0)
    if used >= quota:
        return QuotaDecision(allowed=False, reason="quota", quota=quota, used=used)
    return QuotaDecision(allowed=True, quota=quota, used=used)


def check_sync_quota(db: Session, tenant_id: int, now: Optional[datetime] = None) -> QuotaDecision:
    limits = fetch_plan_limits_for_company(db, tenant_id)
    if limits is None or not limits.sync_enabled:
        return evaluate_sync_quota(limits, 0)
    used = count_company_resource(db, tenant_id, "process_sync", limits.sync_quota, now=now)
    return evaluate_sync_quota(limits, used)


def ensure_sync_allowed(db: Session, tenant_id: int, now: Optional[datetime] = None) -> QuotaDecision:
    decision = check_sync_quota(db, tenant_id, now=now)
    if decision.allowed:
        return decision

    logger.info(
        "Sync denied for tenant %s: %s (%s/%s)",
        tenant_id, decision.reason, decision.used, decision.quota,
    )
    if decision.reason == "quota":
        raise QuotaExceededError(quota=decision.quota, used=decision.used)
    raise IntegrationDisabledError()
