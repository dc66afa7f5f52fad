"""
Health and readiness checks – verify database connectivity and provider configuration.
"""
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logger import logger
from app.db.database import get_db
from app.db.models import IntegrationCredential

router = APIRouter()


def _check_database(db: Session) -> tuple[str, str]:
    """Returns (status, detail). Status is 'ok' or 'error'."""
    try:
        db.execute(text("SELECT 1"))
        return "ok", "Database reachable"
    except SQLAlchemyError as e:
        logger.exception("Database check failed")
        return "error", f"Database: {str(e)}"


def _check_judit(db: Session) -> tuple[str, str]:
    if (settings.JUDIT_API_KEY or "").strip():
        return "ok", "Process-wide Judit key configured"
    count = (
        db.query(IntegrationCredential)
        .filter(IntegrationCredential.provider == "judit", IntegrationCredential.active.is_(True))
        .count()
    )
    if count:
        return "ok", f"{count} active Judit credential(s)"
    return "error", "No Judit credential configured"


@router.get("")
def health():
    return {"status": "healthy"}


@router.get("/ready")
def readiness(db: Session = Depends(get_db)):
    """
    - database: SELECT 1
    - judit: an env key or at least one active stored credential
    """
    db_status, db_detail = _check_database(db)
    judit_status, judit_detail = ("error", "Database unavailable")
    if db_status == "ok":
        judit_status, judit_detail = _check_judit(db)

    healthy = db_status == "ok" and judit_status == "ok"
    return {
        "status": "healthy" if healthy else "degraded",
        "database": {"status": db_status, "detail": db_detail},
        "judit": {"status": judit_status, "detail": judit_detail},
    }
