from __future__ import annotations

from fastapi.testclient import TestClient

from payoutledger.api import app, runtime

ACCOUNT = {"bank_name": "Shinhan", "account_number": "110-123-456789", "account_holder": "Kim Minji"}
WINDOW = {"start_date": "2024-03-01T00:00:00Z", "end_date": "2024-04-01T00:00:00Z"}


def _client() -> TestClient:
    runtime.reset()
    return TestClient(app)


def _seed(client: TestClient) -> None:
    response = client.put("/api/users/inf-1", json={"user_type": "influencer", "bank_account": ACCOUNT, "info": {"name": "Kim Minji"}})
    assert response.status_code == 200
    response = client.post(
        "/api/ledger/transactions",
        json={"id": "tx-1", "amount": "100000", "user_id": "inf-1", "occurred_at": "2024-03-10T03:00:00Z"},
    )
    assert response.status_code == 201


def test_health_endpoints() -> None:
    client = _client()
    assert client.get("/health").json() == {"status": "ok"}

    payload = client.get("/api/health").json()
    assert payload["status"] == "healthy"
    assert payload["active_settlements"] == 0
    assert payload["bus_backend"] == "memory"


def test_settlement_lifecycle_over_http() -> None:
    client = _client()
    _seed(client)

    response = client.post("/api/settlements", json={"user_id": "inf-1", "user_type": "influencer", "period": "monthly", **WINDOW})
    assert response.status_code == 201
    settlement = response.json()
    assert settlement["status"] == "pending"
    assert settlement["net_amount"] == "76234"

    response = client.post(f"/api/settlements/{settlement['id']}/process")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    assert client.post(f"/api/settlements/{settlement['id']}/process").status_code == 409

    listed = client.get("/api/users/inf-1/settlements", params={"status": "completed"}).json()
    assert [item["id"] for item in listed] == [settlement["id"]]
    stats = client.get("/api/users/inf-1/settlements/stats").json()
    assert stats["completed_settlements"] == 1
    assert stats["total_amount"] == "76234"

    saga = client.get(f"/api/settlements/{settlement['id']}/saga").json()
    assert [step["to_status"] for step in saga] == ["pending", "processing", "completed"]

    report = client.get(f"/api/settlements/{settlement['id']}/report", params={"format": "csv"}).json()
    assert report["type"] == "csv"
    report = client.get(f"/api/settlements/{settlement['id']}/report", params={"format": "JSON"}).json()
    assert report["financial"]["net_amount"] == "76234"
    assert client.get(f"/api/settlements/{settlement['id']}/report", params={"format": "pdf"}).status_code == 422

    topics = client.get("/api/events").json()["topics"]
    assert topics["settlement.lifecycle"]["count"] == 2


def test_dispute_endpoints() -> None:
    client = _client()
    _seed(client)
    settlement = client.post("/api/settlements", json={"user_id": "inf-1", "user_type": "influencer", **WINDOW}).json()

    response = client.post(
        f"/api/settlements/{settlement['id']}/disputes",
        json={"reason": "amount_mismatch", "requested_amount": "120000"},
    )
    assert response.status_code == 201
    dispute = response.json()
    assert client.get(f"/api/disputes/{dispute['id']}").json()["reason"] == "amount_mismatch"
    assert client.get(f"/api/settlements/{settlement['id']}").json()["status"] == "disputed"

    again = client.post(f"/api/settlements/{settlement['id']}/disputes", json={"reason": "wrong_account"})
    assert again.status_code == 201
    disputes = client.get(f"/api/settlements/{settlement['id']}/disputes").json()
    assert [item["reason"] for item in disputes] == ["amount_mismatch", "wrong_account"]


def test_error_mapping() -> None:
    client = _client()
    assert client.get("/api/settlements/sttl_missing").status_code == 404
    assert client.get("/api/users/nobody/schedule").status_code == 404
    assert client.get("/api/settlements/sttl_missing/saga").status_code == 404
    assert client.get("/api/settlements/sttl_missing/audit").status_code == 404

    response = client.post("/api/settlements", json={"user_id": "nobody", "user_type": "influencer", **WINDOW})
    assert response.status_code == 422
    assert "No transactions" in response.json()["detail"]

    response = client.post(
        "/api/settlements",
        json={"user_id": "nobody", "user_type": "influencer", "start_date": "2024-04-01T00:00:00Z", "end_date": "2024-03-01T00:00:00Z"},
    )
    assert response.status_code == 422


def test_schedule_endpoints_and_tick() -> None:
    client = _client()
    _seed(client)

    response = client.put("/api/users/inf-1/schedule", json={"period": "weekly", "day_of_week": 1})
    assert response.status_code == 201
    assert response.json()["period"] == "weekly"

    patched = client.patch("/api/users/inf-1/schedule", json={"auto_process": False})
    assert patched.json()["auto_process"] is False
    assert client.put("/api/users/inf-1/schedule", json={"period": "custom"}).status_code == 422
    assert [item["user_id"] for item in client.get("/api/schedules").json()] == ["inf-1"]

    tick = client.post("/api/scheduler/tick", json={"now": "2024-03-01T00:00:00Z"}).json()
    assert tick["runs"] == []
    assert tick["retried_settlement_ids"] == []


def test_campaign_event_endpoint() -> None:
    client = _client()
    client.put("/api/users/inf-1", json={"user_type": "influencer", "bank_account": ACCOUNT})
    client.post(
        "/api/ledger/transactions",
        json={"id": "tx-9", "amount": "250000", "user_id": "inf-1", "campaign_id": "cmp-1", "occurred_at": "2024-03-10T03:00:00Z"},
    )

    response = client.post("/api/campaign-events/campaign.completed", json={"campaign_id": "cmp-1", "influencer_id": "inf-1"})
    assert response.status_code == 200
    assert [item["metadata"]["campaign_id"] for item in response.json()] == ["cmp-1"]

    assert client.post("/api/campaign-events/campaign.started", json={"campaign_id": "cmp-1"}).status_code == 422
