"""Read-side helpers for the inbox API: visibility, filtering and badges."""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from shared.models import Agent, Conversation, ConversationStatus, Message, Page

STATUS_FILTERS = ("ALL", "OPEN", "PENDING", "RESOLVED")

STATUS_BADGES = {
    ConversationStatus.OPEN: "bg-blue-50 text-blue-600 border-blue-100",
    ConversationStatus.PENDING: "bg-amber-50 text-amber-600 border-amber-100",
    ConversationStatus.RESOLVED: "bg-emerald-50 text-emerald-600 border-emerald-100",
}
DEFAULT_BADGE = "bg-slate-50 text-slate-500 border-slate-100"


def status_badge(status: Any) -> str:
    try:
        return STATUS_BADGES.get(ConversationStatus(status), DEFAULT_BADGE)
    except ValueError:
        return DEFAULT_BADGE


def can_view(conversation: Conversation, user: Optional[Agent], pages: Mapping[str, Page]) -> bool:
    """Super admins see everything; agents see conversations of pages they are assigned to."""
    if user is None:
        return False
    if user.is_admin:
        return True
    page = pages.get(conversation.page_id)
    return page is not None and user.id in page.assigned_agent_ids


def visible_conversations(
    conversations: Iterable[Conversation],
    user: Optional[Agent],
    pages: Mapping[str, Page],
    status_filter: str = "ALL",
    search: str = ""
) -> List[Conversation]:
    """
    Conversations the user may see, narrowed by status and customer name.

    Args:
        conversations: Conversations in display order
        user: Logged-in user
        pages: Pages by id
        status_filter: ALL or a ConversationStatus value
        search: Case-insensitive substring of the customer name

    Raises:
        ValueError: If the status filter is not recognized
    """
    status_filter = (status_filter or "ALL").upper()
    if status_filter not in STATUS_FILTERS:
        raise ValueError(f"Unknown status filter: {status_filter}")
    needle = (search or "").lower()

    visible = []
    for conv in conversations:
        if not can_view(conv, user, pages):
            continue
        if status_filter != "ALL" and conv.status.value != status_filter:
            continue
        if needle not in conv.customer_name.lower():
            continue
        visible.append(conv)
    return visible


def conversation_view(conversation: Conversation, pages: Mapping[str, Page]) -> Dict[str, Any]:
    record = conversation.to_record()
    page = pages.get(conversation.page_id)
    record["pageName"] = page.name if page else ""
    record["badge"] = status_badge(conversation.status)
    record["hasAvatar"] = conversation.customer_avatar_blob is not None
    return record


def thread_view(
    conversation: Conversation,
    messages: Iterable[Message],
    pages: Mapping[str, Page],
    window_expired: bool
) -> Dict[str, Any]:
    """A conversation with its messages, oldest first, and the messaging-window flag."""
    return {
        "conversation": conversation_view(conversation, pages),
        "messages": [m.to_record() for m in messages],
        "windowExpired": window_expired,
    }
