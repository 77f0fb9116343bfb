"""Unit tests for operator notifications."""

import json
import sys
import os

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from services.sync_service.notifications import NotificationService


@pytest.fixture
def enabled(monkeypatch):
    monkeypatch.setenv("ENABLE_NOTIFICATIONS", "true")
    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/ops")


@pytest.mark.asyncio
async def test_disabled_by_default(monkeypatch):
    monkeypatch.delenv("ENABLE_NOTIFICATIONS", raising=False)

    assert await NotificationService().send_connection_failure("error", "Auth Failed") is False


@pytest.mark.asyncio
async def test_posts_to_webhook(enabled):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await NotificationService(client).send_connection_failure(
            "uninitialized", "Tables Not Found", "Run the SQL script."
        )

    assert sent is True
    assert received[0]["status"] == "uninitialized"
    assert received[0]["details"] == "Run the SQL script."
    assert "Tables Not Found" in received[0]["text"]


@pytest.mark.asyncio
async def test_webhook_failure_returns_false(enabled):
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async with httpx.AsyncClient(transport=transport) as client:
        sent = await NotificationService(client).send_connection_failure("error", "Sync Failure")

    assert sent is False
