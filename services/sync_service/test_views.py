"""Unit tests for inbox visibility and badges."""

import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from services.sync_service.views import (
    DEFAULT_BADGE,
    status_badge,
    thread_view,
    visible_conversations,
)
from shared.models import Agent, Conversation, ConversationStatus, Page, UserRole


@pytest.fixture
def pages():
    return {
        "p1": Page(id="p1", name="Shop", assigned_agent_ids=["a1"]),
        "p2": Page(id="p2", name="Help Desk"),
    }


@pytest.fixture
def conversations():
    return [
        Conversation(id="t_1", page_id="p1", customer_id="u1", customer_name="Alice"),
        Conversation(id="t_2", page_id="p2", customer_id="u2", customer_name="ALINA",
                     status=ConversationStatus.RESOLVED),
        Conversation(id="t_3", page_id="gone", customer_id="u3", customer_name="Carl"),
    ]


def test_agent_visibility_uses_page_assignment(conversations, pages):
    # The agent's own list of page ids is not consulted
    agent = Agent(id="a1", name="Dana", email="d@x.io", assigned_page_ids={"p2"})

    assert [c.id for c in visible_conversations(conversations, agent, pages)] == ["t_1"]


def test_admin_sees_everything(conversations, pages):
    admin = Agent(id="admin", name="Admin", email="a@x.io", role=UserRole.SUPER_ADMIN)

    assert len(visible_conversations(conversations, admin, pages)) == 3


def test_no_user_sees_nothing(conversations, pages):
    assert visible_conversations(conversations, None, pages) == []


def test_search_is_case_insensitive(conversations, pages):
    admin = Agent(id="admin", name="Admin", email="a@x.io", role=UserRole.SUPER_ADMIN)

    found = visible_conversations(conversations, admin, pages, search="ALI")
    resolved = visible_conversations(conversations, admin, pages, status_filter="resolved", search="ali")

    assert [c.id for c in found] == ["t_1", "t_2"]
    assert [c.id for c in resolved] == ["t_2"]


def test_unknown_filter(conversations, pages):
    with pytest.raises(ValueError):
        visible_conversations(conversations, None, pages, status_filter="SPAM")


@pytest.mark.parametrize("status,colour", [
    ("OPEN", "blue"),
    (ConversationStatus.PENDING, "amber"),
    ("RESOLVED", "emerald"),
])
def test_status_badge(status, colour):
    assert f"text-{colour}-600" in status_badge(status)


def test_unknown_status_badge():
    assert status_badge("ARCHIVED") == DEFAULT_BADGE


def test_thread_view(conversations, pages):
    view = thread_view(conversations[2], [], pages, window_expired=False)

    assert view["conversation"]["pageName"] == ""
    assert view["conversation"]["hasAvatar"] is False
    assert view["messages"] == []
