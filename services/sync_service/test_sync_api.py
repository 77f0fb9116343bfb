"""Tests for the inbox HTTP API."""

import sys
import os
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from services.sync_service import main
from services.sync_service.engine import SyncEngine
from services.sync_service.platform_client import MessengerClient
from services.sync_service.remote_store import RemoteStoreClient
from services.sync_service.session import LocalStorage, SessionStore, build_admin
from shared.encryption import SessionCipher
from shared.errors import PlatformApiError, RelayError
from shared.models import (
    Agent,
    ConnectionStatus,
    Conversation,
    ConversationStatus,
    Message,
    Page,
    UserRole,
)


@pytest.fixture
def store():
    store = AsyncMock(spec=RemoteStoreClient)
    store.upsert.return_value = "ok"
    store.list.return_value = []
    store.ping.return_value = True
    store.metadata.return_value = []
    store.test_write.return_value = True
    return store


@pytest.fixture
def platform():
    platform = AsyncMock(spec=MessengerClient)
    platform.fetch_page_conversations.return_value = []
    platform.send_page_message.return_value = {"recipient_id": "u1", "message_id": "m_sent"}
    return platform


@pytest.fixture
def engine(tmp_path, store, platform, monkeypatch):
    """Engine with pages, agents and two conversations on different pages."""
    session_store = SessionStore(
        LocalStorage(str(tmp_path / "local_storage.json")),
        SessionCipher(SessionCipher.generate_key())
    )
    admin = build_admin({
        "id": "admin-master",
        "name": "Master Admin",
        "email": "admin@messengerflow.io",
        "password": "admin123",
    })
    sync_engine = SyncEngine(store, platform, session_store, admin)
    # Each TestClient request runs on its own event loop; keep poll tasks out of it
    monkeypatch.setattr(sync_engine, "_reconcile_pollers", lambda: None)

    state = sync_engine.state
    state.status = ConnectionStatus.CONNECTED
    state.pages = {
        "p1": Page(id="p1", name="Shop", is_connected=True, access_token="tok1", assigned_agent_ids=["a1"]),
        "p2": Page(id="p2", name="Help Desk", is_connected=True, access_token="tok2"),
    }
    state.agents = {
        "a1": Agent(id="a1", name="Dana", email="dana@x.io", password="pw1", assigned_page_ids={"p1"}),
    }
    state.conversations = {
        "t_1": Conversation(
            id="t_1", page_id="p1", customer_id="u1", customer_name="Alice Smith",
            last_message="hi", last_timestamp="2024-01-02T10:00:00+00:00", unread_count=2,
        ),
        "t_2": Conversation(
            id="t_2", page_id="p2", customer_id="u2", customer_name="Bob",
            last_message="help", last_timestamp="2024-01-03T10:00:00+00:00",
            status=ConversationStatus.PENDING,
        ),
    }
    state.messages = {
        "m_1": Message(
            id="m_1", conversation_id="t_1", sender_id="u1", sender_name="Alice Smith",
            text="hi", timestamp="2024-01-02T10:00:00+00:00",
        ),
    }

    monkeypatch.setattr(main, "engine", sync_engine)
    return sync_engine


@pytest.fixture
def client(engine):
    return TestClient(main.app)


def login(client, email, password):
    return client.post("/api/auth/login", json={"email": email, "password": password})


@pytest.fixture
def agent_client(client):
    assert login(client, "dana@x.io", "pw1").status_code == 200
    return client


@pytest.fixture
def admin_client(client):
    assert login(client, "admin@messengerflow.io", "admin123").status_code == 200
    return client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["dependencies"]["relay"] == "connected"


def test_root(client):
    assert client.get("/").json()["service"] == "Sync Service"


class TestAuth:
    """Tests for login, logout and access control."""

    def test_login_returns_user_without_password(self, client):
        response = login(client, "dana@x.io", "pw1")

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["id"] == "a1"
        assert "password" not in user

    def test_wrong_password(self, client):
        assert login(client, "dana@x.io", "nope").status_code == 401

    def test_inbox_requires_login(self, client):
        assert client.get("/api/inbox").status_code == 401

    def test_logout(self, agent_client, engine):
        assert agent_client.post("/api/auth/logout").status_code == 200
        assert engine.state.current_user is None
        assert agent_client.get("/api/inbox").status_code == 401

    def test_agents_need_admin(self, agent_client):
        assert agent_client.get("/api/agents").status_code == 403
        assert agent_client.get("/api/settings").status_code == 403

    def test_state(self, agent_client):
        body = agent_client.get("/api/state").json()

        assert body["status"] == "connected"
        assert body["currentUser"]["id"] == "a1"


class TestInbox:
    """Tests for conversation listing and threads."""

    def test_agent_sees_assigned_pages_only(self, agent_client):
        body = agent_client.get("/api/inbox").json()

        assert [c["id"] for c in body["conversations"]] == ["t_1"]
        assert body["conversations"][0]["pageName"] == "Shop"
        assert body["conversations"][0]["badge"].startswith("bg-blue-50")

    def test_admin_sees_all_newest_first(self, admin_client):
        body = admin_client.get("/api/inbox").json()

        assert [c["id"] for c in body["conversations"]] == ["t_2", "t_1"]
        assert body["total"] == 2

    def test_status_filter_and_search(self, admin_client):
        pending = admin_client.get("/api/inbox", params={"status": "pending"}).json()
        search = admin_client.get("/api/inbox", params={"search": "alice"}).json()

        assert [c["id"] for c in pending["conversations"]] == ["t_2"]
        assert [c["id"] for c in search["conversations"]] == ["t_1"]

    def test_unknown_status_filter(self, admin_client):
        assert admin_client.get("/api/inbox", params={"status": "ARCHIVED"}).status_code == 400

    def test_thread_of_unassigned_page_is_forbidden(self, agent_client):
        assert agent_client.get("/api/inbox/t_2").status_code == 403

    def test_unknown_thread(self, agent_client):
        response = agent_client.get("/api/inbox/nope")

        assert response.status_code == 404
        assert response.json()["detail"] == "Conversation nope not found"

    def test_get_thread(self, agent_client):
        body = agent_client.get("/api/inbox/t_1").json()

        assert body["conversation"]["id"] == "t_1"
        assert [m["id"] for m in body["messages"]] == ["m_1"]
        assert body["windowExpired"] is True

    def test_open_thread_marks_read(self, agent_client, engine, store):
        response = agent_client.post("/api/inbox/t_1")

        assert response.status_code == 200
        assert response.json()["conversation"]["unreadCount"] == 0
        assert engine.state.open_conversation_id == "t_1"
        store.upsert.assert_awaited_once()

        agent_client.post("/api/inbox/close")
        assert engine.state.open_conversation_id is None

    def test_delete_thread(self, agent_client, engine, store):
        response = agent_client.delete("/api/inbox/t_1")

        assert response.status_code == 200
        assert "t_1" not in engine.state.conversations
        assert "m_1" not in engine.state.messages
        store.delete.assert_any_await("conversations", "t_1")

    def test_avatar(self, agent_client, engine, platform):
        engine.state.conversations["t_1"].customer_avatar = "https://cdn/u1.jpg"
        platform.download_avatar.return_value = b"\xff\xd8jpeg"

        response = agent_client.get("/api/inbox/t_1/avatar")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8jpeg"
        assert response.headers["content-type"] == "image/jpeg"


class TestConversationActions:
    """Tests for status changes and replies."""

    def test_update_status(self, agent_client, engine):
        response = agent_client.patch("/api/conversations/t_1/status", json={"status": "RESOLVED"})

        assert response.status_code == 200
        assert response.json()["status"] == "RESOLVED"
        assert engine.state.conversations["t_1"].status == ConversationStatus.RESOLVED

    def test_invalid_status(self, agent_client):
        response = agent_client.patch("/api/conversations/t_1/status", json={"status": "ARCHIVED"})

        assert response.status_code == 422

    def test_failed_persist_is_502_but_applied(self, agent_client, engine, store):
        store.upsert.side_effect = RelayError("Relay Error: 500", status=500, details="upstream down")

        response = agent_client.patch("/api/conversations/t_1/status", json={"status": "PENDING"})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["error"] == "Relay Error: 500"
        assert detail["details"] == "upstream down"
        assert detail["appliedLocally"] is True
        assert engine.state.conversations["t_1"].status == ConversationStatus.PENDING

    def test_send_message(self, agent_client, engine, platform):
        response = agent_client.post("/api/conversations/t_1/messages", json={"text": "hello"})

        assert response.status_code == 201
        assert response.json()["message"]["id"] == "m_sent"
        assert response.json()["persisted"] is True
        # Last customer activity is long past, so the reply is tagged
        assert platform.send_page_message.await_args.args == ("u1", "hello", "tok1", "HUMAN_AGENT")

    def test_send_refused_by_policy(self, agent_client, platform):
        platform.send_page_message.side_effect = PlatformApiError(
            "(#10) This message is sent outside of allowed window.", status=400, code=10
        )

        response = agent_client.post("/api/conversations/t_1/messages", json={"text": "hello"})

        assert response.status_code == 502
        assert response.json()["detail"]["isPolicy"] is True
        assert response.json()["detail"]["appliedLocally"] is False

    def test_blank_message(self, agent_client):
        response = agent_client.post("/api/conversations/t_1/messages", json={"text": "   "})

        assert response.status_code == 400


class TestSync:
    """Tests for manual sync triggers and the dashboard."""

    def test_quick_sync(self, agent_client, platform):
        platform.fetch_page_conversations.return_value = []

        body = agent_client.post("/api/sync/quick").json()

        assert body["skipped"] is False
        assert body["pagesSynced"] == 2
        assert body["status"] == "connected"

    def test_sync_skipped_when_not_connected(self, agent_client, engine):
        engine.state.status = ConnectionStatus.ERROR

        body = agent_client.post("/api/sync/quick").json()

        assert body == {"skipped": True, "status": "error"}

    def test_deep_sync(self, agent_client, engine, platform):
        agent_client.post("/api/sync/deep")

        assert engine.state.is_history_synced is True
        assert platform.fetch_page_conversations.await_args.args[2] == 100

    def test_dashboard(self, agent_client):
        body = agent_client.get("/api/dashboard").json()

        assert body["totalConversations"] == 2
        assert body["pendingChats"] == 1
        assert len(body["chartData"]) == 7


class TestAdmin:
    """Tests for agent, page and catalog management."""

    def test_create_and_list_agent(self, admin_client, store):
        response = admin_client.post("/api/agents", json={
            "name": "Eli", "email": "eli@x.io", "password": "pw2", "assigned_page_ids": ["p2"],
        })

        assert response.status_code == 201
        created = response.json()
        assert created["id"].startswith("agent-")
        assert "password" not in created
        saved = store.upsert.await_args.args[1]
        assert saved["password"] == "pw2"

        emails = [a["email"] for a in admin_client.get("/api/agents").json()["agents"]]
        assert "eli@x.io" in emails

    def test_duplicate_agent_email(self, admin_client):
        response = admin_client.post("/api/agents", json={
            "name": "Dana 2", "email": "dana@x.io", "password": "pw",
        })

        assert response.status_code == 409

    def test_update_agent(self, admin_client, engine):
        response = admin_client.patch("/api/agents/a1", json={"role": "SUPER_ADMIN"})

        assert response.status_code == 200
        assert engine.state.agents["a1"].role == UserRole.SUPER_ADMIN

    def test_update_unknown_agent(self, admin_client):
        assert admin_client.patch("/api/agents/zz", json={"name": "x"}).status_code == 404

    def test_pages_hide_tokens(self, agent_client):
        pages = agent_client.get("/api/pages").json()["pages"]

        assert all("accessToken" not in p for p in pages)
        assert all(p["hasToken"] for p in pages)

    def test_page_lifecycle(self, admin_client, engine, platform):
        platform.verify_page_access_token.return_value = True

        assert admin_client.post("/api/pages", json={"id": "p9", "name": "New", "access_token": "tok9"}).status_code == 201
        assert admin_client.patch("/api/pages/p9", json={"assigned_agent_ids": ["a1"]}).status_code == 200
        assert admin_client.post("/api/pages/p9/verify").json()["isConnected"] is True
        assert engine.state.pages["p9"].assigned_agent_ids == ["a1"]
        assert admin_client.delete("/api/pages/p9").status_code == 200
        assert "p9" not in engine.state.pages

    def test_links_and_media(self, admin_client, engine):
        link = admin_client.post("/api/links", json={"title": "Docs", "url": "https://docs"}).json()
        media = admin_client.post("/api/media", json={"title": "Logo", "url": "https://cdn/logo.png"}).json()

        assert admin_client.get("/api/links").json()["links"][0]["url"] == "https://docs"
        assert admin_client.get("/api/media").json()["media"][0]["type"] == "image"

        admin_client.delete(f"/api/links/{link['id']}")
        admin_client.delete(f"/api/media/{media['id']}")
        assert engine.state.approved_links == {}
        assert engine.state.approved_media == {}

    def test_settings(self, admin_client, engine):
        admin_client.post("/api/settings/force-write")

        body = admin_client.get("/api/settings").json()

        assert body["status"] == "connected"
        assert body["logs"][0]["message"] == "Write Test Succeeded"

    def test_reload(self, client, store):
        store.ping.return_value = False

        body = client.post("/api/settings/reload").json()

        assert body["status"] == "error"
        assert body["dbError"] == "Supabase Key rejected. Check Project Settings."
