from datetime import datetime

import pytest

from app.db.models import Case, ProcessSync, SyncRequestType, SyncStatus, Tenant
from app.services.background_jobs import shutdown_event
from app.services.case_sync_service import case_sync_service

from conftest import JuditStub, make_token


@pytest.fixture
def stub_provider(monkeypatch):
    def install(stub=None):
        stub = stub or JuditStub()
        monkeypatch.setattr(case_sync_service, "client_factory", stub.client_factory)
        return stub
    return install


def test_manual_sync_returns_summary(client, case, credential, auth_headers, stub_provider):
    stub_provider()

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["sync"]["status"] == "completed"
    assert body["sync"]["remote_request_id"] == "req-1"
    assert body["summary"] == {"parties": 2, "subjects": 1, "movements": 3, "attachments": 1}
    assert body["tracking"]["tracking_id"] == "trk-1"
    assert body["sync"]["metadata"]["summary"]["parties"] == 2


def test_manual_sync_options_are_forwarded(client, db, case, credential, auth_headers, stub_provider):
    stub_provider()

    response = client.post(
        f"/api/v1/processes/{case.id}/sync",
        json={"with_attachments": False, "on_demand": True},
        headers=auth_headers,
    )

    record = db.get(ProcessSync, response.json()["sync"]["id"])
    assert record.request_payload["with_attachments"] is False
    assert record.request_payload["on_demand"] is True


def test_idempotency_key_replays_response(client, db, case, credential, auth_headers, stub_provider):
    stub = stub_provider()
    headers = dict(auth_headers, **{"Idempotency-Key": "abc-1"})

    first = client.post(f"/api/v1/processes/{case.id}/sync", headers=headers)
    calls = len(stub.calls)
    second = client.post(f"/api/v1/processes/{case.id}/sync", headers=headers)

    assert second.status_code == 200
    assert second.json() == first.json()
    assert len(stub.calls) == calls
    assert db.query(ProcessSync).filter(ProcessSync.request_type == SyncRequestType.manual).count() == 1


def test_quota_exhausted_is_429(client, db, case, credential, plan, tenant, auth_headers, stub_provider):
    stub = stub_provider()
    plan.sync_quota = 1
    db.add(ProcessSync(
        tenant_id=tenant.id, case_id=case.id, request_type=SyncRequestType.cron,
        remote_request_id="earlier", requested_at=datetime.utcnow(),
        status=SyncStatus.completed, metadata_json={},
    ))
    db.commit()

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "quota_exceeded"
    assert stub.calls == []


def test_disabled_plan_is_403(client, db, case, credential, plan, auth_headers, stub_provider):
    stub_provider()
    plan.sync_enabled = False
    db.commit()

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "sync_disabled"


def test_missing_credential_is_503(client, case, auth_headers, stub_provider):
    stub_provider()

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "integration_not_configured"


def test_provider_error_is_502(client, case, credential, auth_headers, stub_provider):
    stub_provider(JuditStub(request_error=500))

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "provider_error"


def test_poll_timeout_is_202_with_open_record(client, case, credential, auth_headers, stub_provider):
    stub_provider(JuditStub(final_status="processing"))

    response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 202
    assert response.json()["sync"]["status"] == "processing"


def test_shutdown_interrupts_manual_poll(client, case, credential, auth_headers, stub_provider):
    stub = stub_provider(JuditStub(final_status="processing"))
    shutdown_event().set()
    try:
        response = client.post(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)
    finally:
        shutdown_event().clear()

    assert response.status_code == 202
    assert response.json()["sync"]["status"] == "processing"
    assert not [c for c in stub.calls if c[2].startswith("/requests/")]


def test_other_tenants_case_is_404(client, db, credential, auth_headers, stub_provider):
    other = Tenant(name="Outro")
    db.add(other)
    db.commit()
    foreign = Case(tenant_id=other.id, process_number="1111111-11.2024.1.11.0001")
    db.add(foreign)
    db.commit()

    response = client.post(f"/api/v1/processes/{foreign.id}/sync", headers=auth_headers)

    assert response.status_code == 404


def test_missing_token_is_rejected(client, case):
    response = client.post(f"/api/v1/processes/{case.id}/sync")
    assert response.status_code in (401, 403)


def test_invalid_token_is_401(client, case):
    response = client.get(f"/api/v1/processes/{case.id}/sync", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_status_and_history(client, case, credential, user, stub_provider):
    stub_provider()
    headers = {"Authorization": f"Bearer {make_token(user.id)}"}
    client.post(f"/api/v1/processes/{case.id}/sync", headers=headers)

    status_response = client.get(f"/api/v1/processes/{case.id}/sync", headers=headers)
    history = client.get(f"/api/v1/processes/{case.id}/sync/history", headers=headers)

    assert status_response.status_code == 200
    assert status_response.json()["sync"]["request_type"] == "manual"
    assert history.status_code == 200
    body = history.json()
    assert {s["request_type"] for s in body["syncs"]} == {"manual", "system"}
    assert len(body["responses"]) == 1
    assert "sync_completed" in {a["event_type"] for a in body["audits"]}


def test_status_before_any_sync(client, case, auth_headers):
    response = client.get(f"/api/v1/processes/{case.id}/sync", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["sync"] is None
