"""Tests for the relay HTTP contract."""

import sys
import os
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from services.relay import main
from services.relay.backends import BackendError, SqlBackend
from shared.db_operations import DatabaseOperations


@pytest.fixture
def sql_backend(tmp_path):
    """SQL backend over a throwaway SQLite file."""
    db = DatabaseOperations(database_url=f"sqlite:///{tmp_path / 'relay.db'}")
    db.create_tables()
    return SqlBackend(db)


@pytest.fixture
def client(sql_backend, monkeypatch):
    """Relay client with the SQL backend installed."""
    monkeypatch.setattr(main, "backend", sql_backend)
    return TestClient(main.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "relay"


def test_ping(client):
    response = client.post("/api/db", json={"action": "ping"})

    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_update_then_find(client):
    update = {"action": "updateOne", "collection": "agents", "update": {"$set": {
        "id": "a1", "name": "Dana", "email": "dana@x.io", "assignedPageIds": ["p1"],
    }}}

    response = client.post("/api/db", json=update)
    assert response.json() == {"ok": True, "upsertedId": "a1"}

    response = client.post("/api/db", json={"action": "find", "collection": "agents", "filter": {"id": "a1"}})
    documents = response.json()["documents"]
    assert len(documents) == 1
    assert documents[0]["assignedPageIds"] == ["p1"]


def test_update_without_id_is_critical(client):
    response = client.post("/api/db", json={
        "action": "updateOne", "collection": "agents", "update": {"$set": {"name": "No id"}},
    })

    assert response.status_code == 500
    assert response.json() == {"error": "Upsert requires an 'id' field.", "code": "SUPABASE_RELAY_CRITICAL"}


def test_delete_one_requires_id(client):
    response = client.post("/api/db", json={"action": "deleteOne", "collection": "links"})

    assert response.status_code == 500
    assert response.json()["error"] == "Delete requires an ID."


def test_delete_one_and_many(client):
    for i in range(2):
        client.post("/api/db", json={
            "action": "updateOne", "collection": "messages",
            "update": {"$set": {"id": f"m{i}", "conversationId": "t_1", "text": "hi"}},
        })

    response = client.post("/api/db", json={"action": "deleteOne", "collection": "messages", "filter": {"id": "m0"}})
    assert response.json() == {"ok": True}

    response = client.post("/api/db", json={"action": "deleteMany", "collection": "messages"})
    assert response.json() == {"ok": True}

    response = client.post("/api/db", json={"action": "find", "collection": "messages"})
    assert response.json() == {"documents": []}


def test_find_missing_table(client):
    response = client.post("/api/db", json={"action": "find", "collection": "widgets"})

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Table [widgets] Error"
    assert body["code"] == "TABLE_QUERY_FAILED"
    assert "widgets" in body["details"]


def test_collection_defaults_to_provisioning_logs(client):
    client.post("/api/db", json={"action": "updateOne", "update": {"$set": {
        "id": "heartbeat", "status": "active", "timestamp": "2024-01-01T00:00:00Z",
    }}})

    response = client.post("/api/db", json={"action": "find", "collection": "provisioning_logs"})
    assert response.json()["documents"][0]["id"] == "heartbeat"


def test_list_collections(client):
    response = client.post("/api/db", json={"action": "listCollections"})

    body = response.json()
    assert body["ok"] is True
    assert {c["name"] for c in body["collections"]} == {
        "agents", "pages", "conversations", "messages", "links", "media", "provisioning_logs",
    }


def test_invalid_operation(client):
    response = client.post("/api/db", json={"action": "dropDatabase"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid operation"}


def test_missing_credentials(monkeypatch):
    monkeypatch.setattr(main, "backend", None)
    client = TestClient(main.app)

    response = client.post("/api/db", json={"action": "ping"})

    assert response.status_code == 500
    assert response.json()["error"] == "Supabase Credentials Missing"


def test_backend_error_status_is_forwarded(monkeypatch):
    backend = Mock()
    backend.find = AsyncMock(side_effect=BackendError(
        "Table [pages] Error", status=401, details="JWT expired", code="TABLE_QUERY_FAILED",
    ))
    monkeypatch.setattr(main, "backend", backend)
    client = TestClient(main.app)

    response = client.post("/api/db", json={"action": "find", "collection": "pages"})

    assert response.status_code == 401
    assert response.json()["details"] == "JWT expired"


def test_unexpected_backend_failure_is_critical(monkeypatch):
    backend = Mock()
    backend.list_collections = AsyncMock(side_effect=RuntimeError("connection reset"))
    monkeypatch.setattr(main, "backend", backend)
    client = TestClient(main.app)

    response = client.post("/api/db", json={"action": "listCollections"})

    assert response.status_code == 500
    assert response.json() == {"error": "connection reset", "code": "SUPABASE_RELAY_CRITICAL"}
