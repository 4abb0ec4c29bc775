"""HTTP surface tests using FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

import config
from main import create_app

ALICE = {"X-Subject-Id": "alice", "X-Service-Point": "sp1"}
BOB = {"X-Subject-Id": "bob", "X-Service-Point": "sp1"}
ADMIN = {"X-Subject-Id": "boss", "X-Roles": "admin"}


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(config, "REDIS_URL", None)
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def counter_id(client):
    response = client.post("/service-points/sp1/counters", json={"number": 1}, headers=ADMIN)
    assert response.status_code == 200
    counter = response.json()
    assert client.post(f"/counters/{counter['id']}/bind", headers=ALICE).status_code == 200
    return counter["id"]


def create(client, ticket_class="normal", headers=ALICE):
    response = client.post("/service-points/sp1/tickets", json={"ticket_class": ticket_class},
                           headers=headers)
    assert response.status_code == 200
    return response.json()


class TestIdentity:
    def test_health_is_open(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["database"] == "sqlite"

    def test_missing_identity(self, client):
        assert client.post("/service-points/sp1/tickets", json={}).status_code == 401

    def test_other_service_point_is_forbidden(self, client):
        response = client.post("/service-points/sp2/tickets", json={}, headers=ALICE)
        assert response.status_code == 403

    def test_admin_only_routes(self, client):
        assert client.post("/service-points/sp1/counters", json={"number": 1},
                           headers=ALICE).status_code == 403
        assert client.put("/service-points/sp1/settings", json={}, headers=ALICE).status_code == 403


class TestTicketFlow:
    def test_call_and_serve(self, client, counter_id):
        normal = create(client)
        priority = create(client, "priority")
        assert normal["display_code"] == "N-001"
        assert priority["display_code"] == "P-001"

        response = client.post("/service-points/sp1/call-next", json={"counter_id": counter_id},
                               headers=ALICE)
        assert response.status_code == 200
        called = response.json()["ticket"]
        assert called["display_code"] == "P-001"
        assert called["counter"]["number"] == 1

        for action in ("repeat", "start", "complete"):
            response = client.post(f"/tickets/{called['id']}/{action}", headers=ALICE)
            assert response.status_code == 200, action

        ticket = client.get(f"/tickets/{called['id']}", headers=ALICE).json()
        assert ticket["status"] == "completed"

        waiting = client.get("/service-points/sp1/tickets", headers=ALICE).json()["tickets"]
        assert [t["display_code"] for t in waiting] == ["N-001"]

    def test_empty_queue_is_not_an_error(self, client, counter_id):
        response = client.post("/service-points/sp1/call-next", json={"counter_id": counter_id},
                               headers=ALICE)
        assert response.status_code == 200
        assert response.json()["ticket"] is None

    def test_error_mapping(self, client, counter_id):
        ticket = create(client)

        response = client.post(f"/tickets/{ticket['id']}/start", headers=ALICE)
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

        response = client.get("/tickets/unknown", headers=ALICE)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

        assert client.post(f"/tickets/{ticket['id']}/explode", headers=ALICE).status_code == 400

    def test_reasons(self, client, counter_id):
        ticket = create(client)
        assert client.post(f"/tickets/{ticket['id']}/cancel", headers=ALICE).status_code == 422
        assert client.post(f"/tickets/{ticket['id']}/cancel", json={"reason": ""},
                           headers=ALICE).status_code == 422

        response = client.post(f"/tickets/{ticket['id']}/cancel", json={"reason": "left"},
                               headers=ALICE)
        assert response.status_code == 200
        assert response.json()["ticket"]["cancel_reason"] == "left"

    def test_manual_call(self, client, counter_id):
        body = {"counter_id": counter_id, "ticket_class": "normal", "number": 501}
        response = client.post("/service-points/sp1/manual-call", json=body, headers=ALICE)
        assert response.status_code == 409

        settings = client.put("/service-points/sp1/settings", json={"manual_mode_enabled": True},
                              headers=ADMIN)
        assert settings.status_code == 200
        assert client.get("/service-points/sp1/settings", headers=ALICE).json()["manual_mode_enabled"]

        response = client.post("/service-points/sp1/manual-call", json=body, headers=ALICE)
        assert response.status_code == 200
        assert response.json()["ticket"]["display_code"] == "N-501"


class TestCounters:
    def test_occupied_counter(self, client, counter_id):
        response = client.post(f"/counters/{counter_id}/bind", headers=BOB)
        assert response.status_code == 409
        assert response.json()["error"] == "counter_occupied"

        assert client.post(f"/counters/{counter_id}/release", headers=BOB).status_code == 409
        assert client.post(f"/counters/{counter_id}/release", headers=ALICE).status_code == 200
        assert client.post(f"/counters/{counter_id}/bind", headers=BOB).json()["attendant_id"] == "bob"

    def test_list_and_deactivate(self, client, counter_id):
        counters = client.get("/service-points/sp1/counters", headers=ALICE).json()["counters"]
        assert [c["id"] for c in counters] == [counter_id]

        response = client.put(f"/counters/{counter_id}/active", json={"active": False}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["active"] is False

    def test_unknown_counter(self, client):
        assert client.post("/counters/missing/bind", headers=ALICE).status_code == 404


class TestReadSide:
    def test_board_and_stats(self, client, counter_id):
        create(client)
        client.post("/service-points/sp1/call-next", json={"counter_id": counter_id}, headers=ALICE)

        board = client.get("/service-points/sp1/board").json()
        assert board["current_call"]["display_code"] == "N-001"

        stats = client.get("/service-points/sp1/stats", headers=ALICE).json()
        assert stats["status_counts"]["called"] == 1
        assert stats["last_issued"]["normal"] == 1

    def test_stream_rejects_bad_token(self, client, monkeypatch):
        monkeypatch.setattr(config, "STREAM_TOKEN", "secret")
        assert client.get("/service-points/sp1/events?token=nope").status_code == 401
        assert client.get("/service-points/sp1/events").status_code == 401
