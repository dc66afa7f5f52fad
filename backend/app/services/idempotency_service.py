"""
Replay cache for the manual sync trigger.

A client that retries POST /processes/{id}/sync with the same Idempotency-Key
gets the first answer back instead of a second Sync Record (and a second unit
of quota). Keys are scoped to the user and the endpoint that stored them.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import IdempotencyRecord

logger = logging.getLogger(__name__)


class IdempotencyStore:
    def __init__(self, ttl_hours: Optional[int] = None) -> None:
        self.ttl_hours = ttl_hours

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours or settings.IDEMPOTENCY_TTL_HOURS)

    def lookup(
        self,
        db: Session,
        key: Optional[str],
        user_id: int,
        endpoint: str,
    ) -> Optional[Tuple[int, Dict[str, Any]]]:
        """(status_code, body) stored for this key, or None when absent or expired."""
        if not key:
            return None
        row = (
            db.query(IdempotencyRecord)
            .filter(
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.expires_at > datetime.utcnow(),
            )
            .first()
        )
        if row is None:
            return None
        if row.endpoint and row.endpoint != endpoint:
            logger.warning("Idempotency-Key %s reused for %s (stored for %s)", key, endpoint, row.endpoint)
            return None

        logger.info("Replaying %s for user %s (key %s)", endpoint, user_id, key)
        return row.status_code, row.response_body

    def save(
        self,
        db: Session,
        key: Optional[str],
        user_id: int,
        endpoint: str,
        status_code: int,
        body: Dict[str, Any],
    ) -> None:
        """First writer wins when two retries race on the same key."""
        if not key:
            return
        now = datetime.utcnow()
        db.add(IdempotencyRecord(
            idempotency_key=key,
            user_id=user_id,
            endpoint=endpoint,
            status_code=status_code,
            response_body=body,
            created_at=now,
            expires_at=now + self.ttl,
        ))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Idempotency-Key %s already stored for user %s", key, user_id)

    def purge_expired(self, db: Session, now: Optional[datetime] = None) -> int:
        deleted = (
            db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.expires_at < (now or datetime.utcnow()))
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


idempotency_store = IdempotencyStore()
