from app.db.models import ProcessSync, SyncStatus

from conftest import CNJ


def test_matched_delivery_returns_ok(client, db, case):
    response = client.post(
        "/api/v1/integrations/judit/webhook",
        json={"tracking_id": "trk-1", "process_number": CNJ, "request": {"id": "req-7", "status": "processing"}},
        headers={"x-delivery-id": "dlv-100"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["duplicate"] is False
    record = db.get(ProcessSync, body["sync_id"])
    assert record.status == SyncStatus.processing


def test_replayed_delivery_is_acknowledged_as_duplicate(client, case):
    payload = {"tracking_id": "trk-1", "process_number": CNJ}
    client.post("/api/v1/integrations/judit/webhook", json=payload, headers={"x-delivery-id": "dlv-1"})
    response = client.post("/api/v1/integrations/judit/webhook", json=payload, headers={"x-delivery-id": "dlv-1"})

    assert response.status_code == 200
    assert response.json()["duplicate"] is True


def test_unmatched_delivery_returns_202(client, case):
    response = client.post(
        "/api/v1/integrations/judit/webhook",
        json={"tracking_id": "nobody"},
    )

    assert response.status_code == 202
    assert response.json()["status"] == "ignored"


def test_payload_without_identifiers_is_400(client):
    response = client.post("/api/v1/integrations/judit/webhook", json={"status": "completed"})
    assert response.status_code == 400


def test_malformed_json_is_400(client):
    response = client.post(
        "/api/v1/integrations/judit/webhook",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_unknown_provider_is_404(client):
    response = client.post("/api/v1/integrations/escavador/webhook", json={"tracking_id": "x"})
    assert response.status_code == 404


def test_correlation_id_is_echoed(client, case):
    response = client.post(
        "/api/v1/integrations/judit/webhook",
        json={"tracking_id": "nobody"},
        headers={"X-Correlation-ID": "corr-123"},
    )
    assert response.headers["X-Correlation-ID"] == "corr-123"
