"""HTTP surface tests through the FastAPI test client."""

import pytest
from fastapi.testclient import TestClient

from convoaccess.app import app
from convoaccess.service.runtime import get_runtime


@pytest.fixture
def client():
    with TestClient(app) as client:
        store = get_runtime().store
        for user_id in ("alice", "bob", "carol", "dave", "erin"):
            store.create_user(user_id)
        yield client


def _as(user_id):
    return {"X-User-ID": user_id}


def _create_group(client, participant_ids=("bob", "carol")):
    resp = client.post(
        "/v1/conversations",
        json={"name": "Project", "participant_ids": list(participant_ids)},
        headers=_as("alice"),
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "trace-42"})
    assert resp.headers["X-Request-ID"] == "trace-42"


def test_missing_caller_identity(client):
    resp = client.get("/v1/conversations")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_create_and_read_conversation(client):
    data = _create_group(client)
    assert data["name"] == "Project"
    assert data["version"] == 1
    roles = {p["user_id"]: p["role"] for p in data["participants"]}
    assert roles == {"alice": "admin", "bob": "member", "carol": "member"}

    resp = client.get(f"/v1/conversations/{data['id']}", headers=_as("bob"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"

    resp = client.get(f"/v1/conversations/{data['id']}", headers=_as("dave"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_list_conversations(client):
    data = _create_group(client)
    resp = client.get("/v1/conversations", headers=_as("carol"))
    assert [c["id"] for c in resp.json()["data"]["items"]] == [data["id"]]


def test_group_without_name_is_rejected(client):
    resp = client.post("/v1/conversations", json={}, headers=_as("alice"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_unknown_conversation(client):
    resp = client.get("/v1/conversations/nope", headers=_as("alice"))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_participant_lifecycle(client):
    conv_id = _create_group(client)["id"]
    base = f"/v1/conversations/{conv_id}/participants"

    resp = client.post(base, json={"user_id": "dave"}, headers=_as("alice"))
    assert resp.status_code == 201
    assert resp.json()["data"]["status"] == "active"

    resp = client.post(base, json={"user_id": "dave"}, headers=_as("alice"))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"

    resp = client.put(f"{base}/dave/role", json={"role": "moderator"}, headers=_as("alice"))
    assert resp.status_code == 200
    assert resp.json()["data"]["role"] == "moderator"

    resp = client.put(f"{base}/dave/role", json={"role": "admin"}, headers=_as("alice"))
    assert resp.status_code == 403

    resp = client.delete(f"{base}/carol", headers=_as("dave"))
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "removed"
    assert resp.json()["data"]["removed_by"] == "dave"

    resp = client.delete(f"{base}/carol", headers=_as("alice"))
    assert resp.status_code == 404


def test_invalid_role_value(client):
    conv_id = _create_group(client)["id"]
    resp = client.post(
        f"/v1/conversations/{conv_id}/participants",
        json={"user_id": "dave", "role": "owner"},
        headers=_as("alice"),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_join_link_flow(client):
    conv_id = _create_group(client)["id"]
    resp = client.post(
        f"/v1/conversations/{conv_id}/join-link",
        json={"expires_in_days": 1, "usage_limit": 1},
        headers=_as("alice"),
    )
    assert resp.status_code == 201
    link = resp.json()["data"]
    token = link["token"]
    assert link["url"].endswith(f"/v1/conversations/join/{token}")
    assert link["usage_limit"] == 1

    conversation = client.get(f"/v1/conversations/{conv_id}", headers=_as("alice")).json()
    assert "token" not in conversation["data"]["join_link"]
    assert token not in str(conversation)

    resp = client.post(f"/v1/conversations/join/{token}", headers=_as("dave"))
    assert resp.status_code == 200
    joined = resp.json()["data"]
    assert joined["newly_joined"] is True
    assert joined["usage_count"] == 1
    assert joined["participant"]["role"] == "member"

    resp = client.post(f"/v1/conversations/join/{token}", headers=_as("erin"))
    assert resp.status_code == 409
    assert resp.json()["error"]["message"] == "invalid or expired join link"


def test_join_link_requires_admin(client):
    conv_id = _create_group(client)["id"]
    resp = client.post(f"/v1/conversations/{conv_id}/join-link", json={}, headers=_as("bob"))
    assert resp.status_code == 403


def test_join_link_rejects_bad_limits(client):
    conv_id = _create_group(client)["id"]
    resp = client.post(
        f"/v1/conversations/{conv_id}/join-link",
        json={"usage_limit": 0},
        headers=_as("alice"),
    )
    assert resp.status_code == 400


def test_direct_conversation_routes(client):
    resp = client.post("/v1/conversations/direct", json={"user_id": "bob"}, headers=_as("alice"))
    assert resp.status_code == 201
    direct = resp.json()["data"]
    assert direct["type"] == "direct"

    again = client.post("/v1/conversations/direct", json={"user_id": "alice"}, headers=_as("bob"))
    assert again.json()["data"]["id"] == direct["id"]

    resp = client.post(
        f"/v1/conversations/{direct['id']}/participants",
        json={"user_id": "carol"},
        headers=_as("alice"),
    )
    assert resp.status_code == 403


def test_capabilities(client):
    conv_id = _create_group(client)["id"]
    resp = client.get(f"/v1/conversations/{conv_id}/capabilities", headers=_as("bob"))
    assert resp.status_code == 200
    assert resp.json()["data"]["capabilities"] == {
        "add_participant": False,
        "remove_participant": False,
        "update_role": False,
        "generate_join_link": False,
    }
