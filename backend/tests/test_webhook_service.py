import pytest

from app.db.models import ProcessResponse, ProcessSync, ResponseSource, SyncRequestType, SyncStatus
from app.services.sync_audit_service import sync_audit_service
from app.services.webhook_service import extract_request_info, resolve_delivery_id, webhook_service
from app.utils.exceptions import InvalidWebhookPayloadError

from conftest import CNJ


def add_record(db, case, status, remote_id="req-1"):
    record = ProcessSync(
        tenant_id=case.tenant_id, case_id=case.id, request_type=SyncRequestType.manual,
        remote_request_id=remote_id, status=status, metadata_json={},
    )
    db.add(record)
    db.commit()
    return record


def delivery(status, request_id="req-1", **extra):
    payload = {
        "tracking_id": "trk-1",
        "process_number": CNJ,
        "request": {"id": request_id, "status": status, "result": {"lawsuits": 1}},
    }
    payload.update(extra)
    return payload


def test_extract_request_info_shapes():
    assert extract_request_info({"request": {"id": "r1", "status": "completed"}})[:2] == ("r1", "completed")
    assert extract_request_info({"request_info": {"request_id": "r2"}, "request_status": "processing"})[:2] == ("r2", "processing")
    assert extract_request_info({"request_id": "r3", "request_status": "failed"})[:2] == ("r3", "failed")


def test_delivery_id_prefers_header():
    assert resolve_delivery_id({"delivery_id": "body"}, {"X-Delivery-Id": "hdr"}) == "hdr"
    assert resolve_delivery_id({"deliveryId": "body"}, None) == "body"
    assert resolve_delivery_id({}, {}) is None


@pytest.mark.parametrize("payload", [None, {}, [], {"status": "completed"}])
def test_invalid_payload_rejected(db, payload):
    with pytest.raises(InvalidWebhookPayloadError):
        webhook_service.handle(db, payload)


def test_unknown_request_id_creates_webhook_record(db, case):
    result = webhook_service.handle(db, delivery("completed", request_id="req-new"))

    record = db.get(ProcessSync, result.sync_id)
    assert result.status == "ok"
    assert record.request_type == SyncRequestType.webhook
    assert record.case_id == case.id
    assert record.status == SyncStatus.completed
    assert record.dataset_pending is True
    assert record.metadata_json["webhookCount"] == 1
    db.refresh(case)
    assert case.tracking_id == "trk-1"
    assert case.last_webhook_at is not None


def test_forward_transition_applied(db, case):
    record = add_record(db, case, SyncStatus.pending)

    result = webhook_service.handle(db, delivery("processing"))

    db.refresh(record)
    assert result.status_changed is True
    assert record.status == SyncStatus.processing
    events = [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]
    assert events == ["webhook_received", "status_update"]


def test_backward_transition_ignored(db, case):
    record = add_record(db, case, SyncStatus.processing)

    result = webhook_service.handle(db, delivery("pending"))

    db.refresh(record)
    assert result.status_changed is False
    assert record.status == SyncStatus.processing
    events = [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]
    assert "status_update_ignored" in events


def test_terminal_status_is_final(db, case):
    record = add_record(db, case, SyncStatus.completed)

    webhook_service.handle(db, delivery("processing"))
    webhook_service.handle(db, delivery("failed"))

    db.refresh(record)
    assert record.status == SyncStatus.completed


def test_regression_allowed_when_configured(db, case):
    record = add_record(db, case, SyncStatus.completed)

    webhook_service.handle(db, delivery("processing"), allow_regression=True)

    db.refresh(record)
    assert record.status == SyncStatus.processing
    assert record.completed_at is None


def test_duplicate_delivery_applied_once(db, case):
    record = add_record(db, case, SyncStatus.pending)
    headers = {"x-delivery-id": "dlv-1"}

    first = webhook_service.handle(db, delivery("processing", increments=[{"type": "new_step"}]), headers=headers)
    second = webhook_service.handle(db, delivery("processing", increments=[{"type": "new_step"}]), headers=headers)

    db.refresh(record)
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.response_id == first.response_id
    assert record.metadata_json["webhookCount"] == 1
    assert record.metadata_json["incrementCount"] == 1
    assert db.query(ProcessResponse).filter_by(delivery_id="dlv-1").count() == 1
    events = [a.event_type for a in sync_audit_service.list_for_sync(db, record.id)]
    assert events.count("new_step") == 1


def test_unmatched_delivery_is_stored_and_ignored(db, case):
    result = webhook_service.handle(db, {"tracking_id": "trk-unknown", "process_number": "1234567-00.2020.8.26.0001"})

    assert result.status == "ignored"
    response = db.get(ProcessResponse, result.response_id)
    assert response.case_id is None
    assert response.source == ResponseSource.webhook
    assert response.status_code == 202


def test_match_by_tracking_id(db, case):
    case.tracking_id = "trk-9"
    db.commit()

    result = webhook_service.handle(db, {"tracking_id": "trk-9", "status": "updated"})

    db.refresh(case)
    assert result.case_id == case.id
    assert result.sync_id is None
    assert case.tracking_status == "updated"


def test_authorization_header_not_stored(db, case):
    result = webhook_service.handle(
        db, delivery("processing"), headers={"Authorization": "Bearer x", "x-delivery-id": "dlv-9"},
    )

    response = db.get(ProcessResponse, result.response_id)
    assert "Authorization" not in response.headers


def test_one_audit_per_increment(db, case):
    record = add_record(db, case, SyncStatus.pending)
    increments = [
        {"type": "new_step", "step_id": "s9"},
        {"type": "new_attachment", "attachment_id": "a9"},
        {"step_id": "s10"},
    ]

    webhook_service.handle(db, delivery("processing", increments=increments), headers={"x-delivery-id": "dlv-2"})

    db.refresh(record)
    audits = [
        a for a in sync_audit_service.list_for_sync(db, record.id)
        if a.event_type not in ("webhook_received", "status_update")
    ]
    assert [a.event_type for a in audits] == ["new_step", "new_attachment", "increment"]
    assert [a.event_details["payload"] for a in audits] == increments
    assert record.metadata_json["incrementCount"] == 3
