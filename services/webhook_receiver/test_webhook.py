"""Tests for the Messenger webhook receiver."""

import sys
import os

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from services.webhook_receiver.main import app, extract_messaging_events


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("MESSENGER_VERIFY_TOKEN", "test-token")
    return TestClient(app)


@pytest.fixture
def page_delivery():
    """A page delivery with one inbound message and one read receipt."""
    return {
        "object": "page",
        "entry": [{
            "id": "p1",
            "time": 1704103200000,
            "messaging": [
                {
                    "sender": {"id": "u1"},
                    "recipient": {"id": "p1"},
                    "timestamp": 1704103200000,
                    "message": {"mid": "m_1", "text": "hello"},
                },
                {
                    "sender": {"id": "u1"},
                    "recipient": {"id": "p1"},
                    "timestamp": 1704103201000,
                    "read": {"watermark": 1704103200000},
                },
            ],
        }],
    }


class TestVerification:
    """Tests for the subscription handshake."""

    def test_echoes_challenge(self, client):
        response = client.get("/api/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "test-token", "hub.challenge": "12345",
        })

        assert response.status_code == 200
        assert response.text == "12345"

    def test_rejects_wrong_token(self, client):
        response = client.get("/api/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345",
        })

        assert response.status_code == 403
        assert response.text == "Verification failed"

    def test_rejects_wrong_mode(self, client):
        response = client.get("/api/webhook", params={
            "hub.mode": "unsubscribe", "hub.verify_token": "test-token", "hub.challenge": "1",
        })

        assert response.status_code == 403


class TestEventIntake:
    """Tests for event delivery."""

    def test_page_delivery_is_acknowledged(self, client, page_delivery):
        response = client.post("/api/webhook", json=page_delivery)

        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"

    def test_non_page_object_is_404(self, client):
        response = client.post("/api/webhook", json={"object": "instagram", "entry": []})

        assert response.status_code == 404

    def test_extract_messaging_events(self, page_delivery):
        events = extract_messaging_events(page_delivery)

        assert [e["kind"] for e in events] == ["message", "read"]
        assert events[0]["page_id"] == "p1"
        assert events[0]["sender_id"] == "u1"
        assert events[0]["text"] == "hello"
        assert events[1]["mid"] is None

    def test_extract_echo_and_empty_entries(self):
        body = {"object": "page", "entry": [
            {"id": "p1", "messaging": [{"sender": {"id": "p1"}, "message": {"mid": "m_2", "is_echo": True}}]},
            {"id": "p2"},
        ]}

        events = extract_messaging_events(body)

        assert len(events) == 1
        assert events[0]["kind"] == "echo"

    def test_invalid_json_is_400(self, client):
        response = client.post(
            "/api/webhook", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.text == "Bad Request"

    def test_malformed_entries_are_skipped(self, client):
        response = client.post("/api/webhook", json={"object": "page", "entry": {"id": "p1"}})

        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"

    def test_extract_skips_non_object_items(self):
        body = {"object": "page", "entry": [
            "p1",
            {"id": "p2", "messaging": {"sender": {"id": "u1"}}},
            {"id": "p3", "messaging": [
                None,
                {"sender": "u1", "recipient": {"id": "p3"}, "message": "hi"},
            ]},
        ]}

        events = extract_messaging_events(body)

        assert len(events) == 1
        assert events[0]["page_id"] == "p3"
        assert events[0]["sender_id"] is None
        assert events[0]["kind"] == "other"
