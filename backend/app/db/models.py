"""
SQLAlchemy ORM Models

Tenancy (plans, tenants, users), the tracked legal case, the provider
credential store, the sync trail (requests, raw responses, audit events,
legacy query counters) and the normalized case dataset.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.db.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

# ============================================================================
# Enums
# ============================================================================

class SyncStatus(str, enum.Enum):
    """Lifecycle of a provider sync request"""
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

class SyncRequestType(str, enum.Enum):
    """What triggered the sync"""
    manual = "manual"
    cron = "cron"
    webhook = "webhook"
    system = "system"

class ResponseSource(str, enum.Enum):
    """How a raw provider response reached us"""
    webhook = "webhook"
    polling = "polling"

class CredentialEnvironment(str, enum.Enum):
    producao = "producao"
    homologacao = "homologacao"

class AttachmentOrigin(str, enum.Enum):
    process = "process"
    step = "step"

TERMINAL_SYNC_STATUSES = (SyncStatus.completed, SyncStatus.failed, SyncStatus.cancelled)

# ============================================================================
# Tenancy
# ============================================================================

class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    sync_enabled = Column(Boolean, nullable=True)
    sync_quota = Column(Integer, nullable=True)  # NULL = unlimited
    created_at = Column(TIMESTAMP, default=datetime.utcnow)


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

    plan = relationship("Plan")
    users = relationship("User", back_populates="tenant")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="users")

# ============================================================================
# Cases
# ============================================================================

class Case(Base):
    """A legal case (processo) tracked with the provider"""
    __tablename__ = "cases"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    process_number = Column(String(64), nullable=False, index=True)
    instance = Column(String(32), nullable=True)

    # Provider tracking handle
    tracking_id = Column(String(128), nullable=True, index=True)
    tracking_hour_range = Column(String(64), nullable=True)
    tracking_status = Column(String(64), nullable=True)

    last_synced_at = Column(TIMESTAMP, nullable=True)
    last_webhook_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant")
    syncs = relationship("ProcessSync", back_populates="case", order_by="ProcessSync.id")
    detail = relationship("ProcessDetail", uselist=False, back_populates="case")
    parties = relationship("ProcessParty", order_by="ProcessParty.id")
    subjects = relationship("ProcessSubject", order_by="ProcessSubject.id")
    movements = relationship("ProcessMovement", order_by="ProcessMovement.id")
    attachments = relationship("ProcessAttachment", order_by="ProcessAttachment.id")

# ============================================================================
# Provider credentials
# ============================================================================

class IntegrationCredential(Base):
    __tablename__ = "integration_api_keys"

    id = Column(Integer, primary_key=True)
    provider = Column(String(50), nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True)
    is_global = Column(Boolean, default=False, nullable=False)
    key_value = Column(Text, nullable=False)
    environment = Column(String(30), default=CredentialEnvironment.producao.value, nullable=False)
    api_url = Column(String(500), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    last_used = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

# ============================================================================
# Sync trail
# ============================================================================

class ProcessSync(Base):
    """One attempt to obtain fresh data for a case from the provider"""
    __tablename__ = "process_sync"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=True, index=True)
    integration_api_key_id = Column(Integer, ForeignKey("integration_api_keys.id", ondelete="SET NULL"), nullable=True)
    remote_request_id = Column(String(128), nullable=True, index=True)
    request_type = Column(SQLEnum(SyncRequestType), default=SyncRequestType.manual, nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requested_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    request_payload = Column(JSONType, nullable=True)
    request_headers = Column(JSONType, nullable=True)
    status = Column(SQLEnum(SyncStatus), default=SyncStatus.pending, nullable=False, index=True)
    status_reason = Column(Text, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)
    # completed by webhook, result pages not fetched yet
    dataset_pending = Column(Boolean, default=False, nullable=False, index=True)
    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = relationship("Case", back_populates="syncs")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SYNC_STATUSES


class ProcessResponse(Base):
    """Raw provider payload as received, never modified"""
    __tablename__ = "process_response"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=True, index=True)
    process_sync_id = Column(Integer, ForeignKey("process_sync.id", ondelete="SET NULL"), nullable=True, index=True)
    integration_api_key_id = Column(Integer, ForeignKey("integration_api_keys.id", ondelete="SET NULL"), nullable=True)
    delivery_id = Column(String(255), nullable=True)
    source = Column(SQLEnum(ResponseSource), nullable=False)
    status_code = Column(Integer, nullable=True)
    received_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    payload = Column(JSONType, nullable=True)
    headers = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "delivery_id", name="uq_process_response_delivery"),
    )


class SyncAudit(Base):
    """Append-only lifecycle event"""
    __tablename__ = "sync_audit"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=True, index=True)
    process_sync_id = Column(Integer, ForeignKey("process_sync.id", ondelete="SET NULL"), nullable=True, index=True)
    process_response_id = Column(Integer, ForeignKey("process_response.id", ondelete="SET NULL"), nullable=True)
    integration_api_key_id = Column(Integer, ForeignKey("integration_api_keys.id", ondelete="SET NULL"), nullable=True)
    event_type = Column(String(80), nullable=False, index=True)
    event_details = Column(JSONType, nullable=False, default=dict)
    observed_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)


class ProcessQueryLog(Base):
    """
    Per-attempt query counter. Rows without a sync reference predate the
    process_sync table and still count towards the monthly quota.
    """
    __tablename__ = "process_query_log"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    process_sync_id = Column(Integer, ForeignKey("process_sync.id", ondelete="SET NULL"), nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    details = Column(Text, nullable=True)
    queried_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False, index=True)

# ============================================================================
# Normalized case dataset (replaced wholesale per successful sync)
# ============================================================================

class ProcessDetail(Base):
    __tablename__ = "process_detail"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, unique=True)
    process_number = Column(String(64), nullable=False)
    request_id = Column(String(128), nullable=True)
    response_id = Column(String(128), nullable=True)
    origin_id = Column(String(128), nullable=True)
    instance = Column(Integer, nullable=True)
    name = Column(Text, nullable=True)
    area = Column(String(255), nullable=True)
    state = Column(String(64), nullable=True)
    city = Column(String(255), nullable=True)
    subject = Column(Text, nullable=True)
    status = Column(String(255), nullable=True)
    tribunal_acronym = Column(String(64), nullable=True)
    judging_body = Column(Text, nullable=True)
    distribution_date = Column(String(64), nullable=True)
    free_justice = Column(Boolean, default=False, nullable=False)
    secrecy_level = Column(Integer, nullable=True)
    justice = Column(String(64), nullable=True)
    justice_description = Column(String(255), nullable=True)
    amount = Column(Numeric(18, 2), nullable=True)
    last_step_id = Column(String(128), nullable=True)
    main_classification_code = Column(String(64), nullable=True)
    main_classification_name = Column(String(255), nullable=True)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = relationship("Case", back_populates="detail")


class ProcessParty(Base):
    __tablename__ = "process_party"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    process_number = Column(String(64), nullable=False)
    name = Column(Text, nullable=True)
    side = Column(String(64), nullable=True)
    person_type = Column(String(64), nullable=True)
    main_document = Column(String(64), nullable=True)
    main_document_type = Column(String(32), nullable=True)
    has_lawyers = Column(Boolean, default=False, nullable=False)


class ProcessSubject(Base):
    __tablename__ = "process_subject"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    process_number = Column(String(64), nullable=False)
    code = Column(String(64), nullable=True)
    name = Column(Text, nullable=True)


class ProcessMovement(Base):
    __tablename__ = "process_movement"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    process_number = Column(String(64), nullable=False)
    step_id = Column(String(128), nullable=False)
    instance = Column(Integer, nullable=True)
    step_type = Column(String(255), nullable=True)
    content = Column(Text, nullable=True)
    step_date = Column(String(64), nullable=True)
    private = Column(Boolean, default=False, nullable=False)
    crawl_id = Column(String(128), nullable=True)

    __table_args__ = (
        Index("ix_process_movement_case_step", "case_id", "step_id"),
    )


class ProcessAttachment(Base):
    __tablename__ = "process_attachment"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    process_number = Column(String(64), nullable=False)
    movement_id = Column(Integer, ForeignKey("process_movement.id", ondelete="SET NULL"), nullable=True)
    movement_step_id = Column(String(128), nullable=True)
    instance = Column(Integer, nullable=True)
    attachment_id = Column(String(128), nullable=True)
    name = Column(Text, nullable=True)
    attachment_type = Column(String(64), nullable=True)
    attachment_date = Column(String(64), nullable=True)
    crawl_id = Column(String(128), nullable=True)
    status = Column(String(64), nullable=True)
    origin = Column(SQLEnum(AttachmentOrigin), nullable=False, default=AttachmentOrigin.process)

# ============================================================================
# Idempotency
# ============================================================================

class IdempotencyRecord(Base):
    """
    Cached result of a side-effecting request keyed by (user_id, idempotency_key).
    A repeated key within the TTL replays the stored response.
    """
    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True)
    idempotency_key = Column(String(255), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint = Column(String(255), nullable=True)
    status_code = Column(Integer, nullable=False, default=200)
    response_body = Column(JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    expires_at = Column(TIMESTAMP, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", "user_id", name="uq_idempotency_key_user"),
    )
