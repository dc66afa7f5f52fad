"""
Custom exception classes
"""
from typing import Any, Optional

from fastapi import HTTPException


# ============================================================================
# Sync domain errors
# ============================================================================

class SyncError(Exception):
    """Base for every failure the sync engine records on a Sync Record"""
    reason = "sync_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class ConfigurationError(SyncError):
    """No usable provider credential for the tenant"""
    reason = "not_configured"


class ProviderApiError(SyncError):
    """Provider answered with a non-success status (or not at all)"""
    reason = "provider_error"

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class SyncTimeoutError(SyncError):
    """Polling budget exhausted before the provider finished"""
    reason = "timeout"

    def __init__(self, message: str = "", attempts: int = 0, last_status: Optional[str] = None):
        super().__init__(message or "Provider request did not finish in time")
        self.attempts = attempts
        self.last_status = last_status


class SyncCancelledError(SyncTimeoutError):
    """Polling interrupted by shutdown"""
    reason = "cancelled"


class QuotaExceededError(SyncError):
    reason = "quota"

    def __init__(self, quota: int, used: int):
        super().__init__(f"Monthly sync quota exhausted ({used}/{quota})")
        self.quota = quota
        self.used = used


class IntegrationDisabledError(SyncError):
    reason = "disabled"

    def __init__(self, message: str = "Process sync is not enabled for this plan"):
        super().__init__(message)


class PersistenceError(SyncError):
    reason = "persistence"


class NormalizationError(PersistenceError):
    """Provider payload could not be turned into a case dataset"""
    reason = "normalization"


class InvalidWebhookPayloadError(SyncError):
    reason = "invalid_payload"


# ============================================================================
# HTTP errors
# ============================================================================

class CaseNotFoundError(HTTPException):
    """Raised when case doesn't exist"""
    def __init__(self, case_id):
        super().__init__(
            status_code=404,
            detail=f"Case {case_id} not found"
        )


class TenantNotResolvedError(HTTPException):
    """Raised when the authenticated user has no tenant"""
    def __init__(self):
        super().__init__(
            status_code=403,
            detail="User is not linked to a company"
        )
