# app/api/v1/deps.py

import hmac
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.database import get_db
from app.db.models import Case, User
from app.utils.exceptions import CaseNotFoundError, TenantNotResolvedError

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _user_id_from_token(token: str) -> int:
    """The auth service signs either a "user_id" claim or the standard "sub"."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.PyJWTError:
        raise _unauthorized("Invalid token")

    try:
        return int(claims.get("user_id") or claims.get("sub"))
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token")

# ============================================================================
# Caller identity
# ============================================================================

def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, _user_id_from_token(credentials.credentials))
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is deactivated")
    return user


def resolve_user_tenant(current_user: User = Depends(get_current_user)) -> int:
    """Company the authenticated user acts for."""
    if current_user.tenant_id is None:
        raise TenantNotResolvedError()
    return current_user.tenant_id


def get_tenant_case(
    case_id: int,
    tenant_id: int = Depends(resolve_user_tenant),
    db: Session = Depends(get_db),
) -> Case:
    """Case scoped to the caller's company; other tenants' cases are reported as missing."""
    case = db.query(Case).filter(Case.id == case_id, Case.tenant_id == tenant_id).first()
    if case is None:
        raise CaseNotFoundError(case_id)
    return case

# ============================================================================
# Worker token
# ============================================================================

def verify_worker_token(x_worker_token: Optional[str] = Header(None)) -> None:
    """
    Guards the scheduled-sync worker endpoint. An unset SYNC_WORKER_TOKEN
    disables it (503) rather than leaving it open.
    """
    expected = (settings.SYNC_WORKER_TOKEN or "").strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync worker disabled: SYNC_WORKER_TOKEN is not set",
        )
    if not hmac.compare_digest((x_worker_token or "").strip().encode(), expected.encode()):
        raise _unauthorized("Invalid or missing x-worker-token")
