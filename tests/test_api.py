"""
End-to-end tests through the HTTP API.

These tests prove:
- Service order writes are recorded in the audit log with the acting user
- A rejected stage move returns 409 and leaves no trace, including moves of cancelled orders
- A move carrying a funnel saves it alongside the stage
- Timeline, summary and export endpoints reflect the recorded history
"""
import csv
import io

import pytest
from fastapi.testclient import TestClient

from ordertrail.config import Settings
from ordertrail.main import create_app

ALICE = {"X-Actor-Id": "u-1", "X-Actor-Name": "Alice"}


@pytest.fixture
def app(session_factory):
    return create_app(session_factory, Settings(audit_max_entries=100))


@pytest.fixture
def client(app):
    # Entering the client runs the lifespan, so the tracker flushes and stops
    # its audit writer before the database fixture is torn down
    with TestClient(app) as client:
        yield client


@pytest.fixture
def order(client):
    response = client.post(
        "/api/service-orders",
        json={"id": "so-1", "title": "Hydraulic pump", "stage_id": "intake", "funnel_id": "repairs"},
        headers=ALICE
    )
    assert response.status_code == 201
    return response.json()


class TestServiceOrders:
    """Recorded writes."""

    def test_create_is_audited(self, client, order):
        assert order["status"] == "pending"

        history = client.get("/api/audit/SERVICE_ORDER/so-1/history").json()
        assert len(history) == 1
        assert history[0]["entry"]["action"] == "CREATE"
        assert history[0]["entry"]["actor_name"] == "Alice"
        assert history[0]["description"].startswith("Alice created service order")
        assert 'Title: added "Hydraulic pump"' in history[0]["change_lines"]

    def test_duplicate_create_rejected(self, client, order):
        response = client.post("/api/service-orders", json={"id": "so-1", "title": "Again", "stage_id": "intake"})
        assert response.status_code == 409

    def test_update_records_diff(self, client, order):
        response = client.patch("/api/service-orders/so-1", json={"title": "Pump", "priority": 2})
        assert response.status_code == 200
        assert response.json()["title"] == "Pump"

        entry = client.get("/api/audit/SERVICE_ORDER/so-1/history").json()[0]["entry"]
        assert entry["action"] == "UPDATE"
        assert entry["actor_id"] is None
        assert [c["field"] for c in entry["changes"]] == ["title", "priority"]

    def test_update_unknown_order(self, client):
        response = client.patch("/api/service-orders/nope", json={"title": "Pump"})
        assert response.status_code == 404

    def test_list_and_detail(self, client, order):
        listed = client.get("/api/service-orders").json()
        assert [o["id"] for o in listed] == ["so-1"]
        assert client.get("/api/service-orders/so-1").json()["stage_id"] == "intake"
        assert client.get("/api/service-orders/nope").status_code == 404

    def test_list_refreshed_after_write(self, client, order):
        client.get("/api/service-orders")
        client.patch("/api/service-orders/so-1", json={"title": "Renamed"})
        assert client.get("/api/service-orders").json()[0]["title"] == "Renamed"


class TestStageMoves:
    """Optimistic moves over HTTP."""

    def test_move_commits(self, client, order):
        response = client.post("/api/service-orders/so-1/move", json={"stage_id": "repair"}, headers=ALICE)

        assert response.status_code == 200
        body = response.json()
        assert body["from_stage_id"] == "intake"
        assert body["to_stage_id"] == "repair"
        assert body["state"] == "committed"
        assert client.get("/api/service-orders/so-1").json()["stage_id"] == "repair"

        entries = client.get("/api/audit/entries", params={"action": "STATUS_CHANGE"}).json()
        assert [e["id"] for e in entries] == [body["audit_entry_id"]]

    def test_rejected_move_returns_409(self, app, client, order):
        async def refuse(entity_id, stage_id):
            return False

        app.state.tracker.coordinator.persist_stage_move = refuse

        response = client.post("/api/service-orders/so-1/move", json={"stage_id": "repair"})

        assert response.status_code == 409
        assert response.json()["detail"]["target_stage_id"] == "repair"
        assert client.get("/api/service-orders/so-1").json()["stage_id"] == "intake"
        assert len(client.get("/api/audit/entries").json()) == 1

    def test_funnel_change_is_saved(self, app, client, order):
        response = client.post(
            "/api/service-orders/so-1/move",
            json={"stage_id": "repair", "funnel_id": "warranty"},
            headers=ALICE
        )
        assert response.status_code == 200

        assert app.state.tracker.orders.get_snapshot("so-1")["funnel_id"] == "warranty"
        assert client.get("/api/service-orders/so-1").json()["funnel_id"] == "warranty"
        assert client.get("/api/service-orders").json()[0]["funnel_id"] == "warranty"

        entry = client.get("/api/audit/entries", params={"action": "STATUS_CHANGE"}).json()[0]
        assert entry["new_values"]["funnel_id"] == "warranty"

    def test_move_of_cancelled_order_refused(self, client, order):
        client.post("/api/service-orders/so-1/cancel")

        response = client.post("/api/service-orders/so-1/move", json={"stage_id": "repair"})

        assert response.status_code == 409
        assert client.get("/api/service-orders/so-1").json()["stage_id"] == "intake"
        visits = client.get("/api/service-orders/so-1/timeline").json()
        assert [v["stage_id"] for v in visits] == ["intake"]
        assert visits[0]["exited_at"] is not None

    def test_move_unknown_order(self, client):
        response = client.post("/api/service-orders/nope/move", json={"stage_id": "repair"})
        assert response.status_code == 404

    def test_timeline(self, client, order):
        client.post("/api/service-orders/so-1/move", json={"stage_id": "repair"})
        client.post("/api/service-orders/so-1/cancel")
        client.post("/api/service-orders/so-1/restore")

        visits = client.get("/api/service-orders/so-1/timeline").json()

        assert [v["stage_id"] for v in visits] == ["intake", "repair", "repair"]
        assert visits[0]["funnel_id"] == "repairs"
        assert visits[1]["exited_at"] is not None
        assert visits[2]["exited_at"] is None


class TestAuditEndpoints:
    """Direct access to the audit log."""

    def test_log_entry(self, client):
        response = client.post(
            "/api/audit/entries",
            json={
                "entity_type": "SERVICE_ORDER_PRODUCT",
                "entity_id": "p-1",
                "action": "ADD_PRODUCT",
                "new_values": {"sku": "A1"}
            },
            headers=ALICE
        )
        assert response.status_code == 201
        assert response.json()["actor_name"] == "Alice"

    def test_invalid_action_rejected(self, client):
        response = client.post(
            "/api/audit/entries",
            json={"entity_type": "SERVICE_ORDER", "entity_id": "so-1", "action": "ARCHIVE"}
        )
        assert response.status_code == 422

    def test_malformed_search_is_empty(self, client, order):
        response = client.get("/api/audit/entries", params={"start_date": "yesterday"})
        assert response.status_code == 200
        assert response.json() == []

    def test_summary(self, client, order):
        client.post("/api/service-orders/so-1/cancel", headers=ALICE)

        summary = client.get("/api/audit/summary").json()

        assert summary["total_entries"] == 2
        assert summary["action_counts"]["CANCEL"] == 1
        assert summary["actor_counts"] == {"Alice": 2}

    def test_csv_export(self, client, order):
        response = client.get("/api/audit/export", params={"format": "csv", "entity_id": "so-1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][0] == "ID"
        assert rows[1][3] == "CREATE"

    def test_json_export(self, client, order):
        response = client.get("/api/audit/export")
        assert response.headers["content-type"].startswith("application/json")
        assert response.json()[0]["entity_id"] == "so-1"

    def test_unknown_export_format(self, client):
        assert client.get("/api/audit/export", params={"format": "xml"}).status_code == 400

    def test_cleanup(self, client, order):
        response = client.delete("/api/audit/entries", params={"older_than": "2999-01-01T00:00:00Z"})
        assert response.json() == {"removed": 1}
        assert client.get("/api/audit/entries").json() == []

    def test_health(self, client):
        response = client.get("/health")
        assert response.json()["status"] == "healthy"
