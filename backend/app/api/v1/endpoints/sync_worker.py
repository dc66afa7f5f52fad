"""
Sync worker endpoint for deployments that drive the scheduled sync from an
external timer instead of the in-process APScheduler job.

    POST /api/v1/sync-worker/run-due?batch_size=<N>

Authentication: x-worker-token header must match settings.SYNC_WORKER_TOKEN.
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.v1.deps import verify_worker_token
from app.db.database import get_db
from app.db.schemas import WorkerRunSummary
from app.services.scheduled_sync_service import run_due as run_due_syncs

router = APIRouter()


@router.post("/run-due", response_model=WorkerRunSummary)
def run_due(
    batch_size: int = Query(
        20, ge=1, le=200,
        description="Number of due cases to process per run",
    ),
    db: Session = Depends(get_db),
    _: None = Depends(verify_worker_token),
) -> Dict[str, Any]:
    """
    Finalize finished provider requests, then sync the next batch of due
    cases oldest-synced-first (never-synced cases first).
    """
    return run_due_syncs(db, batch_size=batch_size)
