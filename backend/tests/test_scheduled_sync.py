import threading
from datetime import datetime, timedelta

from app.core.config import settings
from app.db.models import Case, Plan, ProcessSync, SyncRequestType, SyncStatus, Tenant
from app.services.case_sync_service import CaseSyncService, case_sync_service
from app.services.scheduled_sync_service import run_due, select_due_cases, select_finalizable
from app.services.sync_audit_service import sync_audit_service

from conftest import JuditStub


def add_case(db, tenant, number, last_synced_at=None):
    row = Case(tenant_id=tenant.id, process_number=number, last_synced_at=last_synced_at)
    db.add(row)
    db.commit()
    return row


def test_due_cases_oldest_first_and_never_synced_first(db, tenant):
    now = datetime.utcnow()
    stale = add_case(db, tenant, "1", now - timedelta(hours=48))
    staler = add_case(db, tenant, "2", now - timedelta(hours=72))
    add_case(db, tenant, "3", now - timedelta(hours=1))
    never = add_case(db, tenant, "4")

    due = select_due_cases(db, limit=10)

    assert [c.id for c in due] == [never.id, staler.id, stale.id]


def test_due_cases_skip_disabled_plans_and_open_requests(db, tenant):
    off_plan = Plan(name="Free", sync_enabled=False)
    db.add(off_plan)
    db.commit()
    off_tenant = Tenant(name="Sem sync", plan_id=off_plan.id)
    db.add(off_tenant)
    db.commit()
    add_case(db, off_tenant, "9")

    busy = add_case(db, tenant, "5")
    db.add(ProcessSync(
        tenant_id=tenant.id, case_id=busy.id, request_type=SyncRequestType.cron,
        remote_request_id="r", status=SyncStatus.processing, metadata_json={},
    ))
    db.commit()

    assert select_due_cases(db, limit=10) == []


def test_finalizable_selection(db, tenant, case):
    pending = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.webhook,
        remote_request_id="a", status=SyncStatus.completed, dataset_pending=True, metadata_json={},
    )
    stale_processing = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.manual,
        remote_request_id="b", status=SyncStatus.processing, metadata_json={},
        updated_at=datetime.utcnow() - timedelta(hours=2),
    )
    fresh_processing = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.manual,
        remote_request_id="c", status=SyncStatus.processing, metadata_json={},
    )
    db.add_all([pending, stale_processing, fresh_processing])
    db.commit()

    selected = select_finalizable(db, limit=10)

    assert [r.remote_request_id for r in selected] == ["a", "b"]


def test_run_due_syncs_due_cases(db, case, credential):
    stub = JuditStub()

    summary = run_due(db, batch_size=5, service=CaseSyncService(client_factory=stub.client_factory))

    assert summary["ok"] is True
    assert summary["processed"] == 1
    assert summary["completed"] == 1
    record = db.query(ProcessSync).filter(ProcessSync.request_type == SyncRequestType.cron).one()
    assert record.status == SyncStatus.completed
    assert record.requested_by is None


def test_run_due_counts_quota_denials_as_skipped(db, case, credential, plan, tenant):
    plan.sync_quota = 0
    db.commit()
    stub = JuditStub()

    summary = run_due(db, batch_size=5, service=CaseSyncService(client_factory=stub.client_factory))

    assert summary["skipped"] == 1
    assert stub.calls == []


def test_run_due_finalizes_webhook_completed_request(db, case, credential, tenant):
    record = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.webhook,
        remote_request_id="req-1", status=SyncStatus.completed, dataset_pending=True,
        completed_at=datetime.utcnow(), metadata_json={},
    )
    db.add(record)
    db.commit()
    stub = JuditStub()

    summary = run_due(db, batch_size=5, service=CaseSyncService(client_factory=stub.client_factory))

    db.refresh(record)
    assert summary["finalized"] == 1
    assert summary["processed"] == 0
    assert record.dataset_pending is False
    assert case.last_synced_at is not None


def test_run_due_fails_webhook_completed_request_without_dataset(db, case, credential, tenant):
    case.last_synced_at = datetime.utcnow()
    record = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.webhook,
        remote_request_id="req-1", status=SyncStatus.completed, dataset_pending=True,
        completed_at=datetime.utcnow(), metadata_json={},
    )
    db.add(record)
    db.commit()
    stub = JuditStub(pages=[{
        "page": 1, "page_count": 1,
        "page_data": [{"response_id": "e1", "response_type": "application_error",
                       "response_data": {"message": "LAWSUIT_NOT_FOUND"}}],
    }])

    summary = run_due(db, batch_size=5, service=CaseSyncService(client_factory=stub.client_factory))

    db.refresh(record)
    assert summary["failed"] == 1
    assert summary["finalized"] == 0
    assert record.status == SyncStatus.failed
    assert record.status_reason == "LAWSUIT_NOT_FOUND"
    assert record.dataset_pending is False
    assert "sync_failed" in [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]
    assert select_finalizable(db, limit=10) == []


def stale_processing_record(db, tenant, case, remote_id="req-9"):
    record = ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.manual,
        remote_request_id=remote_id, status=SyncStatus.processing, metadata_json={},
        updated_at=datetime.utcnow() - timedelta(hours=2),
    )
    db.add(record)
    db.commit()
    return record


def status_checks(stub):
    return [c for c in stub.calls if c[2].startswith("/requests/")]


def test_run_due_fails_open_request_unknown_to_provider(db, case, credential, tenant):
    case.last_synced_at = datetime.utcnow()
    db.commit()
    record = stale_processing_record(db, tenant, case)
    stub = JuditStub(status_error=404)
    service = CaseSyncService(client_factory=stub.client_factory)

    first = run_due(db, batch_size=5, service=service)
    second = run_due(db, batch_size=5, service=service)

    db.refresh(record)
    assert first["failed"] == 1
    assert second["failed"] == 0
    assert len(status_checks(stub)) == 1
    assert record.status == SyncStatus.failed
    assert record.status_reason == "request unavailable"
    assert "sync_failed" in [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]


def test_run_due_defers_open_request_on_provider_outage(db, case, credential, tenant):
    case.last_synced_at = datetime.utcnow()
    db.commit()
    record = stale_processing_record(db, tenant, case)
    stub = JuditStub(status_error=503)
    service = CaseSyncService(client_factory=stub.client_factory)

    first = run_due(db, batch_size=5, service=service)
    checks_after_first = len(status_checks(stub))
    second = run_due(db, batch_size=5, service=service)

    db.refresh(record)
    assert first["failed"] == 1
    assert second["failed"] == 0
    assert len(status_checks(stub)) == checks_after_first
    assert record.status == SyncStatus.processing
    assert record.metadata_json["lastStatusCheckError"] == "request unavailable"
    assert "status_check_failed" in [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]


def test_run_due_pending_on_timeout(db, case, credential):
    stub = JuditStub(final_status="processing")

    summary = run_due(db, batch_size=5, service=CaseSyncService(client_factory=stub.client_factory))

    assert summary["pending"] == 1


def test_run_due_stops_when_cancelled(db, case, credential):
    event = threading.Event()
    event.set()
    stub = JuditStub()

    summary = run_due(db, batch_size=5, cancel_event=event, service=CaseSyncService(client_factory=stub.client_factory))

    assert summary["processed"] == 0
    assert stub.calls == []


def test_worker_endpoint_requires_token(client, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_WORKER_TOKEN", "")
    assert client.post("/api/v1/sync-worker/run-due").status_code == 503

    monkeypatch.setattr(settings, "SYNC_WORKER_TOKEN", "s3cret")
    assert client.post("/api/v1/sync-worker/run-due", headers={"x-worker-token": "wrong"}).status_code == 401


def test_worker_endpoint_runs_batch(client, case, credential, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_WORKER_TOKEN", "s3cret")
    monkeypatch.setattr(case_sync_service, "client_factory", JuditStub().client_factory)

    response = client.post("/api/v1/sync-worker/run-due?batch_size=5", headers={"x-worker-token": "s3cret"})

    assert response.status_code == 200
    body = response.json()
    assert body["completed"] == 1
    assert body["startedAt"] <= body["finishedAt"]
