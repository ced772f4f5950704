"""HTTP surface: status codes, error mapping, admin token."""

import pytest
from fastapi.testclient import TestClient

from meterd.daemon.app import app
from meterd.daemon.services import build_services, set_services
from meterd.daemon.utils.config_loader import LedgerConfig


@pytest.fixture
def services(sqlite_dsn):
    config = LedgerConfig(features={"analyze": {"estimate": 4}})
    built = build_services(sqlite_dsn, config)
    built.ledger.grant("alice", 10)
    set_services(built)
    yield built
    set_services(None)


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.delenv("METERD_ADMIN_TOKEN", raising=False)
    # No context manager: startup hooks and the background loop stay off.
    return TestClient(app)


class TestOperationsApi:
    def test_start_and_finalize(self, client):
        r = client.post("/v1/operations", json={"user_id": "alice", "feature": "analyze", "estimate": 5})
        assert r.status_code == 201
        body = r.json()
        assert body["balance"] == 5
        op_id = body["operation_id"]

        r = client.post(f"/v1/operations/{op_id}/finalize", json={"actual_cost": 3})
        assert r.status_code == 200
        assert r.json()["applied"] is True
        assert r.json()["operation"]["status"] == "success"

        r = client.post(f"/v1/operations/{op_id}/finalize", json={"is_refund": True})
        assert r.status_code == 200
        assert r.json()["applied"] is False

        assert client.get("/v1/users/alice/balance").json() == {"user_id": "alice", "credits": 7}
        assert client.get(f"/v1/operations/{op_id}").json()["cost"] == 3

    def test_estimate_falls_back_to_configured_price(self, client):
        r = client.post("/v1/operations", json={"user_id": "alice", "feature": "analyze"})
        assert r.status_code == 201
        assert r.json()["estimate"] == 4

    def test_unpriced_feature_without_estimate(self, client):
        r = client.post("/v1/operations", json={"user_id": "alice", "feature": "translate"})
        assert r.status_code == 422

    def test_insufficient_credits_is_402(self, client):
        r = client.post("/v1/operations", json={"user_id": "alice", "feature": "analyze", "estimate": 50})
        assert r.status_code == 402
        detail = r.json()["detail"]
        assert detail["error"] == "insufficient_credits"
        assert detail["required"] == 50
        assert detail["available"] == 10

    def test_unknown_operation_is_404(self, client):
        assert client.get("/v1/operations/nope").status_code == 404
        assert client.post("/v1/operations/nope/finalize", json={}).status_code == 404

    def test_negative_values_rejected(self, client):
        r = client.post("/v1/operations", json={"user_id": "alice", "feature": "analyze", "estimate": -1})
        assert r.status_code == 422

    def test_history_and_entries(self, client):
        op_id = client.post(
            "/v1/operations", json={"user_id": "alice", "feature": "analyze", "estimate": 2}
        ).json()["operation_id"]
        client.post(f"/v1/operations/{op_id}/finalize", json={"is_refund": True, "error_message": "boom"})

        ops = client.get("/v1/users/alice/operations", params={"status": "failed"}).json()["operations"]
        assert [op["id"] for op in ops] == [op_id]
        entries = client.get("/v1/users/alice/entries").json()["entries"]
        assert [e["reason"] for e in entries] == ["failure_refund", "reserve", "grant"]


class TestAdminApi:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["integrity"]["ok"] is True

    def test_adjust(self, client):
        r = client.post("/admin/credits/adjust", json={"user_id": "alice", "amount": -4, "reason": "chargeback"})
        assert r.status_code == 200
        assert r.json()["credits"] == 6
        r = client.post("/admin/credits/adjust", json={"user_id": "alice", "amount": -40, "reason": "chargeback"})
        assert r.status_code == 402

    def test_audit_reconcile_stats(self, client):
        client.post("/v1/operations", json={"user_id": "alice", "feature": "analyze", "estimate": 2})
        audit = client.get("/admin/audit").json()
        assert audit["passed"] is True
        assert len(audit["checks"]) == 5

        summary = client.post("/admin/reconcile").json()
        assert set(summary) == {"orphans_refunded", "resettled", "expired", "scanned"}

        stats = client.get("/admin/stats").json()
        assert stats["total_operations"] == 1
        assert stats["pending_operations"] == 1

    def test_admin_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("METERD_ADMIN_TOKEN", "s3cret")
        assert client.get("/admin/stats").status_code == 403
        assert client.get("/admin/stats", headers={"x-meterd-admin-token": "wrong"}).status_code == 403
        assert client.get("/admin/stats", headers={"x-meterd-admin-token": "s3cret"}).status_code == 200
        # Operation endpoints are not behind the admin token.
        assert client.get("/v1/users/alice/balance").status_code == 200
