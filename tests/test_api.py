"""
HTTP API: status codes and body shapes callers branch on.
"""

import pytest
from fastapi.testclient import TestClient

from actionengine.api.main import app, build_engine, get_engine

from conftest import USER


@pytest.fixture
def client(engine):
    """Test client bound to the in-memory engine fixture."""
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def price_body(new_price, **extra):
    action = {"type": "price_update", "sku_code": "GIN-001", "params": {"new_price": new_price},
              "reason": "competitor price match"}
    action.update(extra)
    return {"action": action, "userId": USER}


class TestExecuteEndpoint:

    def test_low_risk_executes(self, client, commerce):
        response = client.post("/actions/execute", json=price_body(27.99))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["old_price"] == 28.50
        assert data["data"]["new_price"] == 27.99
        assert commerce.get_sku("GIN-001").price == 27.99

    def test_high_risk_needs_approval(self, client, commerce):
        response = client.post("/actions/execute", json=price_body(24.99, expected_impact=150))

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "requires_approval"
        assert data["approval_details"]["requires_approval"] is True
        assert data["approval_details"]["risk_level"] == "high"
        assert data["approval_details"]["estimated_impact"] == 150
        assert commerce.get_sku("GIN-001").price == 28.50

    def test_validation_failure_persists_nothing(self, client, engine):
        body = {"action": {"type": "reorder_stock", "sku_code": "GIN-001", "params": {"quantity": -5}},
                "userId": USER}

        response = client.post("/actions/execute", json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["details"][0]["rule"] == "non_negative_quantity"
        assert engine.repository.count_actions() == 0

    def test_user_id_required(self, client):
        response = client.post("/actions/execute", json={"action": price_body(27.99)["action"]})
        assert response.status_code == 401
        assert response.json()["error"] == "User ID required"

    def test_action_type_required(self, client):
        response = client.post("/actions/execute", json={"action": {"params": {}}, "userId": USER})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid action payload"

    def test_execution_failure_returns_action_id(self, make_engine):
        from conftest import RecordingCommerce, make_catalog

        engine = make_engine(RecordingCommerce(make_catalog(), failing_skus=["GIN-001"]))
        app.dependency_overrides[get_engine] = lambda: engine
        try:
            response = TestClient(app).post("/actions/execute", json=price_body(27.99))
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error_kind"] == "permanent"
        assert engine.get_action(data["action_id"]).status.value == "failed"


class TestRollbackEndpoint:

    def test_rollback_then_already_rolled_back(self, client, commerce):
        action_id = client.post("/actions/execute", json=price_body(27.99)).json()["action_id"]

        response = client.post("/actions/rollback", json={"actionId": action_id, "userId": USER,
                                                          "reason": "customer complaints"})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert commerce.get_sku("GIN-001").price == 28.50

        again = client.post("/actions/rollback", json={"actionId": action_id, "userId": USER})
        assert again.status_code == 400
        assert again.json()["code"] == "already_rolled_back"

    def test_missing_fields(self, client):
        response = client.post("/actions/rollback", json={"userId": USER})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields"

    def test_unknown_action(self, client):
        response = client.post("/actions/rollback", json={"actionId": "missing", "userId": USER})
        assert response.status_code == 404

    def test_other_owner(self, client):
        action_id = client.post("/actions/execute", json=price_body(27.99)).json()["action_id"]
        response = client.post("/actions/rollback", json={"actionId": action_id, "userId": "intruder"})
        assert response.status_code == 403

    def test_not_completed(self, client):
        action_id = client.post("/actions/execute", json=price_body(24.99)).json()["action_id"]
        response = client.post("/actions/rollback", json={"actionId": action_id, "userId": USER})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_state"


class TestApprovalEndpoints:

    def test_pending_then_approve(self, client, commerce):
        client.post("/actions/execute", json=price_body(24.99))

        pending = client.get("/approvals/pending", params={"userId": USER}).json()["pending_approvals"]
        assert len(pending) == 1

        response = client.post(f"/approvals/{pending[0]['id']}/decision",
                               json={"decision": "APPROVE", "approver": "manager-7", "notes": "ok"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["action"]["status"] == "completed"
        assert data["execution"]["success"] is True
        assert commerce.get_sku("GIN-001").price == 24.99

    def test_second_decision_conflicts(self, client):
        client.post("/actions/execute", json=price_body(24.99))
        approval_id = client.get("/approvals/pending").json()["pending_approvals"][0]["id"]

        client.post(f"/approvals/{approval_id}/decision", json={"decision": "deny", "approver": "manager-7"})
        response = client.post(f"/approvals/{approval_id}/decision",
                               json={"decision": "approve", "approver": "manager-8"})

        assert response.status_code == 409
        assert response.json()["approval_status"] == "denied"

    def test_unknown_approval(self, client):
        response = client.post("/approvals/missing/decision", json={"decision": "approve", "approver": "m"})
        assert response.status_code == 404

    def test_invalid_decision_is_rejected_by_schema(self, client):
        response = client.post("/approvals/any/decision", json={"decision": "maybe", "approver": "m"})
        assert response.status_code == 422


class TestBatchEndpoint:

    def test_run_batch(self, client):
        body = {
            "batch_config": {"batch_name": "repricing", "execute_parallel": True, "max_concurrent": 2},
            "requests": [
                {"type": "price_update", "sku_code": "GIN-001", "params": {"new_price": 28.40}},
                {"type": "price_update", "sku_code": "RUM-003", "params": {"new_price": 21.90}},
            ],
            "userId": USER,
        }

        response = client.post("/actions/batch", json=body)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["completed"] == 2
        assert data["pending"] == 0

        fetched = client.get(f"/batches/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["action_ids"] == data["action_ids"]

    def test_batch_requires_user(self, client):
        body = {"batch_config": {"batch_name": "x"}, "requests": []}
        assert client.post("/actions/batch", json=body).status_code == 401

    def test_bad_concurrency(self, client):
        body = {"batch_config": {"batch_name": "x", "max_concurrent": 0}, "requests": [], "userId": USER}
        assert client.post("/actions/batch", json=body).status_code == 422

    def test_unknown_batch(self, client):
        assert client.get("/batches/missing").status_code == 404


class TestQueryEndpoints:

    def test_get_action_and_audit(self, client):
        action_id = client.post("/actions/execute", json=price_body(27.99)).json()["action_id"]

        action = client.get(f"/actions/{action_id}").json()
        assert action["status"] == "completed"
        assert action["rollback_data"]["old_price"] == 28.50
        assert action["rollback_data"]["kind"] == "price_update"

        entries = client.get(f"/actions/{action_id}/audit").json()["entries"]
        assert entries[0]["to_status"] == "pending"
        assert entries[-1]["to_status"] == "completed"

    def test_list_actions(self, client):
        client.post("/actions/execute", json=price_body(27.99))
        response = client.get("/actions", params={"userId": USER})
        assert len(response.json()["actions"]) == 1

    def test_unknown_action(self, client):
        assert client.get("/actions/missing").status_code == 404
        assert client.get("/actions/missing/audit").status_code == 404

    def test_health(self, client):
        client.post("/actions/execute", json=price_body(27.99))

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["action_count"] == 1
        assert data["version"] == "1.0.0"

    def test_health_on_sqlite(self, tmp_path):
        engine = build_engine(str(tmp_path / "api.db"))
        app.dependency_overrides[get_engine] = lambda: engine
        try:
            data = TestClient(app).get("/health").json()
        finally:
            app.dependency_overrides.clear()
            engine.shutdown()

        assert data["db_health"] is True
        assert data["action_count"] == 0
