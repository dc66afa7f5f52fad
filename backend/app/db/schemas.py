"""
Pydantic validation schemas
"""
from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from app.db.models import ResponseSource, SyncRequestType, SyncStatus

# ============================================================================
# Sync trigger
# ============================================================================

class SyncTriggerRequest(BaseModel):
    """Manual sync options"""
    with_attachments: bool = True
    on_demand: bool = False

# ============================================================================
# Sync trail
# ============================================================================

class ProcessSyncOut(BaseModel):
    id: int
    case_id: Optional[int] = None
    remote_request_id: Optional[str] = None
    request_type: SyncRequestType
    requested_by: Optional[int] = None
    requested_at: datetime
    status: SyncStatus
    status_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata"))

    class Config:
        from_attributes = True

class ProcessResponseOut(BaseModel):
    id: int
    process_sync_id: Optional[int] = None
    delivery_id: Optional[str] = None
    source: ResponseSource
    status_code: Optional[int] = None
    received_at: datetime
    error_message: Optional[str] = None

    class Config:
        from_attributes = True

class SyncAuditOut(BaseModel):
    id: int
    process_sync_id: Optional[int] = None
    process_response_id: Optional[int] = None
    event_type: str
    event_details: Dict[str, Any] = Field(default_factory=dict)
    observed_at: datetime

    class Config:
        from_attributes = True

class TrackingOut(BaseModel):
    tracking_id: Optional[str] = None
    tracking_hour_range: Optional[str] = None
    tracking_status: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_webhook_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class CaseSyncStatusResponse(BaseModel):
    case_id: int
    process_number: str
    tracking: TrackingOut
    sync: Optional[ProcessSyncOut] = None

class CaseSyncHistoryResponse(BaseModel):
    case_id: int
    syncs: List[ProcessSyncOut] = Field(default_factory=list)
    responses: List[ProcessResponseOut] = Field(default_factory=list)
    audits: List[SyncAuditOut] = Field(default_factory=list)

class DatasetSummary(BaseModel):
    parties: int = 0
    subjects: int = 0
    movements: int = 0
    attachments: int = 0

class SyncTriggerResponse(CaseSyncStatusResponse):
    summary: Optional[DatasetSummary] = None

# ============================================================================
# Webhook
# ============================================================================

class WebhookAck(BaseModel):
    status: str
    sync_id: Optional[int] = None
    duplicate: bool = False

# ============================================================================
# Worker
# ============================================================================

class WorkerRunSummary(BaseModel):
    ok: bool = True
    startedAt: str
    finishedAt: str
    processed: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0
    finalized: int = 0
