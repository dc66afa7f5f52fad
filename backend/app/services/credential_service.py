"""
Judit credential resolution.

Order of preference for a tenant:
  1. an active credential scoped to the tenant
  2. an active global credential
  3. the process-wide key from settings (JUDIT_API_KEY)
  4. legacy fallback: any active Judit credential, when enabled

Within a tier, production keys win, then the most recently used, the most
recently updated and finally the highest id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case as sql_case
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import CredentialEnvironment, IntegrationCredential
from app.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PROVIDER = "judit"
DEFAULT_BASE_URL = "https://requests.prod.judit.io"


@dataclass(frozen=True)
class ResolvedCredential:
    base_url: str
    api_key: str
    credential_id: Optional[int]
    environment: str
    scope: str  # tenant | global | env | legacy


def _base_url(api_url: Optional[str]) -> str:
    for candidate in (api_url, settings.JUDIT_BASE_URL, DEFAULT_BASE_URL):
        if candidate and candidate.strip():
            return candidate.strip().rstrip("/")
    return DEFAULT_BASE_URL


def _ordered(query):
    return query.order_by(
        sql_case((IntegrationCredential.environment == CredentialEnvironment.producao.value, 0), else_=1),
        IntegrationCredential.last_used.is_(None),
        IntegrationCredential.last_used.desc(),
        IntegrationCredential.updated_at.desc(),
        IntegrationCredential.id.desc(),
    )


def _active(db: Session):
    return db.query(IntegrationCredential).filter(
        IntegrationCredential.provider == PROVIDER,
        IntegrationCredential.active.is_(True),
        IntegrationCredential.key_value != "",
    )


def _from_row(row: IntegrationCredential, scope: str) -> ResolvedCredential:
    return ResolvedCredential(
        base_url=_base_url(row.api_url),
        api_key=row.key_value.strip(),
        credential_id=row.id,
        environment=row.environment or CredentialEnvironment.producao.value,
        scope=scope,
    )


class CredentialService:
    def resolve(
        self,
        db: Session,
        tenant_id: Optional[int],
        allow_legacy_fallback: Optional[bool] = None,
    ) -> ResolvedCredential:
        if allow_legacy_fallback is None:
            allow_legacy_fallback = settings.JUDIT_ALLOW_LEGACY_CREDENTIAL_FALLBACK

        if tenant_id is not None:
            row = _ordered(_active(db).filter(IntegrationCredential.tenant_id == tenant_id)).first()
            if row is not None:
                return _from_row(row, "tenant")

        row = _ordered(_active(db).filter(IntegrationCredential.is_global.is_(True))).first()
        if row is not None:
            return _from_row(row, "global")

        env_key = (settings.JUDIT_API_KEY or "").strip()
        if env_key:
            return ResolvedCredential(
                base_url=_base_url(None),
                api_key=env_key,
                credential_id=None,
                environment=CredentialEnvironment.producao.value,
                scope="env",
            )

        if allow_legacy_fallback:
            row = (
                _active(db)
                .order_by(IntegrationCredential.updated_at.desc(), IntegrationCredential.id.desc())
                .first()
            )
            if row is not None:
                logger.warning(
                    "Using legacy Judit credential %s for tenant %s; configure a tenant or global key",
                    row.id, tenant_id,
                    extra={"tenant_id": tenant_id, "credential_id": row.id},
                )
                return _from_row(row, "legacy")

        raise ConfigurationError(f"No Judit credential configured for company {tenant_id}")

    def mark_used(self, db: Session, credential: ResolvedCredential) -> None:
        if credential.credential_id is None:
            return
        db.query(IntegrationCredential).filter(
            IntegrationCredential.id == credential.credential_id
        ).update({IntegrationCredential.last_used: datetime.utcnow()}, synchronize_session=False)


credential_service = CredentialService()
