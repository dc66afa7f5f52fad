"""
services/background_jobs.py

Scheduled background jobs.

Jobs:
  1. scheduled_process_sync
     - Finalizes provider requests that finished outside a poll and runs
       cron syncs for due cases (see scheduled_sync_service.run_due).
     - Runs every SCHEDULED_SYNC_INTERVAL_MINUTES when SCHEDULED_SYNC_ENABLED.

Started and stopped from the FastAPI startup/shutdown events in app.main.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.db.database import SessionLocal

logger = logging.getLogger(__name__)

# ── Scheduler singleton ───────────────────────────────────────────────────────
_scheduler: AsyncIOScheduler | None = None
_shutdown = threading.Event()


def start_scheduler() -> None:
    """
    Starts the APScheduler background job scheduler.
    Call this from the FastAPI startup event.
    """
    global _scheduler

    _shutdown.clear()
    if not settings.SCHEDULED_SYNC_ENABLED:
        logger.info("Scheduled process sync disabled")
        return

    _scheduler = AsyncIOScheduler(timezone="UTC")

    _scheduler.add_job(
        scheduled_process_sync,
        trigger=IntervalTrigger(minutes=max(settings.SCHEDULED_SYNC_INTERVAL_MINUTES, 1), timezone="UTC"),
        id="scheduled_process_sync",
        name="Scheduled Judit process sync",
        replace_existing=True,
        max_instances=1,          # never run two at once
        misfire_grace_time=300,   # allow 5 min late start
    )

    _scheduler.start()
    logger.info("Background scheduler started: 1 job registered")


def shutdown_event() -> threading.Event:
    """Set on application shutdown; request-thread polls wait on it too."""
    return _shutdown


def shutdown_scheduler() -> None:
    """Stops the scheduler; a poll in progress is interrupted."""
    global _scheduler
    _shutdown.set()
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
    _scheduler = None


def _run_due_blocking() -> dict:
    from app.services.scheduled_sync_service import run_due
    from app.services.idempotency_service import idempotency_store

    db = SessionLocal()
    try:
        summary = run_due(db, cancel_event=_shutdown)
        deleted = idempotency_store.purge_expired(db)
        if deleted:
            logger.info("idempotency_cleanup: deleted %d expired rows", deleted)
        return summary
    finally:
        db.close()


# ─────────────────────────────────────────────────────────────────────────────
# Job 1: Scheduled process sync
# ─────────────────────────────────────────────────────────────────────────────

async def scheduled_process_sync() -> None:
    """The sync engine is blocking (httpx sync client + ORM); run it off the event loop."""
    try:
        await asyncio.to_thread(_run_due_blocking)
    except Exception:
        logger.exception("scheduled_process_sync crashed")
