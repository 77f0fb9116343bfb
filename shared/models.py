"""Shared data models for the MessengerFlow inbox portal.

Records travel between the engine, the relay and the database in the
camelCase shape of the database schema; every model converts with
``to_record()`` / ``from_record()``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set


COLLECTIONS = ['agents', 'pages', 'conversations', 'messages', 'links', 'media', 'provisioning_logs']


class UserRole(str, Enum):
    AGENT = 'AGENT'
    SUPER_ADMIN = 'SUPER_ADMIN'


class ConversationStatus(str, Enum):
    OPEN = 'OPEN'
    PENDING = 'PENDING'
    RESOLVED = 'RESOLVED'


class LogType(str, Enum):
    INFO = 'info'
    ERROR = 'error'
    SUCCESS = 'success'


class ConnectionStatus(str, Enum):
    INITIALIZING = 'initializing'
    SYNCING = 'syncing'
    CONNECTED = 'connected'
    ERROR = 'error'
    UNINITIALIZED = 'uninitialized'


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as produced by the platform or the portal.

    Accepts a trailing ``Z`` and the ``+0000`` offset style used by the Graph
    API. Naive values are taken as UTC.

    Returns:
        An aware datetime, or None when the value cannot be parsed
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    elif len(text) > 5 and text[-5] in '+-' and text[-4:].isdigit() and ':' not in text[-5:]:
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """Return True if timestamp ``candidate`` is strictly later than ``current``."""
    if not candidate:
        return False
    if not current:
        return True
    candidate_dt = parse_timestamp(candidate)
    current_dt = parse_timestamp(current)
    if candidate_dt is not None and current_dt is not None:
        return candidate_dt > current_dt
    return candidate > current


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Agent:
    """A portal user: a support agent or the super admin."""
    id: str
    name: str
    email: str
    password: str = ''
    role: UserRole = UserRole.AGENT
    avatar: str = ''
    status: str = 'online'
    assigned_page_ids: Set[str] = field(default_factory=set)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def to_record(self, include_password: bool = True) -> dict:
        record = {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value,
            'avatar': self.avatar,
            'status': self.status,
            'assignedPageIds': sorted(self.assigned_page_ids),
        }
        if include_password:
            record['password'] = self.password
        return record

    @classmethod
    def from_record(cls, data: dict) -> 'Agent':
        return cls(
            id=data['id'],
            name=data.get('name') or '',
            email=data.get('email') or '',
            password=data.get('password') or '',
            role=UserRole(data.get('role') or UserRole.AGENT.value),
            avatar=data.get('avatar') or '',
            status=data.get('status') or 'online',
            assigned_page_ids=set(data.get('assignedPageIds') or []),
        )


@dataclass
class Page:
    """A connected messaging-platform page."""
    id: str
    name: str
    category: str = ''
    is_connected: bool = False
    access_token: str = ''
    assigned_agent_ids: List[str] = field(default_factory=list)

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'isConnected': self.is_connected,
            'accessToken': self.access_token,
            'assignedAgentIds': list(self.assigned_agent_ids),
        }

    @classmethod
    def from_record(cls, data: dict) -> 'Page':
        return cls(
            id=data['id'],
            name=data.get('name') or '',
            category=data.get('category') or '',
            is_connected=bool(data.get('isConnected')),
            access_token=data.get('accessToken') or '',
            assigned_agent_ids=list(data.get('assignedAgentIds') or []),
        )


@dataclass
class Conversation:
    """A customer thread on one page, keyed by the platform conversation id."""
    id: str
    page_id: str
    customer_id: str
    customer_name: str = ''
    customer_avatar: str = ''
    last_message: str = ''
    last_timestamp: str = ''
    status: ConversationStatus = ConversationStatus.OPEN
    assigned_agent_id: Optional[str] = None
    unread_count: int = 0
    # Transient avatar cache, never persisted.
    customer_avatar_blob: Optional[bytes] = field(default=None, repr=False, compare=False)

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'pageId': self.page_id,
            'customerId': self.customer_id,
            'customerName': self.customer_name,
            'customerAvatar': self.customer_avatar,
            'lastMessage': self.last_message,
            'lastTimestamp': self.last_timestamp,
            'status': self.status.value,
            'assignedAgentId': self.assigned_agent_id,
            'unreadCount': self.unread_count,
        }

    @classmethod
    def from_record(cls, data: dict) -> 'Conversation':
        return cls(
            id=data['id'],
            page_id=data.get('pageId') or '',
            customer_id=data.get('customerId') or '',
            customer_name=data.get('customerName') or '',
            customer_avatar=data.get('customerAvatar') or '',
            last_message=data.get('lastMessage') or '',
            last_timestamp=data.get('lastTimestamp') or '',
            status=ConversationStatus(data.get('status') or ConversationStatus.OPEN.value),
            assigned_agent_id=data.get('assignedAgentId'),
            unread_count=int(data.get('unreadCount') or 0),
        )


@dataclass
class Message:
    """A single message in a conversation. Append-only."""
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: str
    is_incoming: bool = True
    is_read: bool = False

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'senderName': self.sender_name,
            'text': self.text,
            'timestamp': self.timestamp,
            'isIncoming': self.is_incoming,
            'isRead': self.is_read,
        }

    @classmethod
    def from_record(cls, data: dict) -> 'Message':
        return cls(
            id=data['id'],
            conversation_id=data.get('conversationId') or '',
            sender_id=data.get('senderId') or '',
            sender_name=data.get('senderName') or '',
            text=data.get('text') or '',
            timestamp=data.get('timestamp') or '',
            # Missing flag means a customer message
            is_incoming=bool(data['isIncoming']) if data.get('isIncoming') is not None else True,
            is_read=bool(data.get('isRead')),
        )


@dataclass
class ApprovedLink:
    """Catalog link agents can quick-send."""
    id: str
    title: str
    url: str
    category: str = ''

    def to_record(self) -> dict:
        return {'id': self.id, 'title': self.title, 'url': self.url, 'category': self.category}

    @classmethod
    def from_record(cls, data: dict) -> 'ApprovedLink':
        return cls(
            id=data['id'],
            title=data.get('title') or '',
            url=data.get('url') or '',
            category=data.get('category') or '',
        )


@dataclass
class ApprovedMedia:
    """Catalog media item agents can quick-send."""
    id: str
    title: str
    url: str
    type: str = 'image'
    is_local: bool = False

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'url': self.url,
            'type': self.type,
            'isLocal': self.is_local,
        }

    @classmethod
    def from_record(cls, data: dict) -> 'ApprovedMedia':
        return cls(
            id=data['id'],
            title=data.get('title') or '',
            url=data.get('url') or '',
            type=data.get('type') or 'image',
            is_local=bool(data.get('isLocal')),
        )


@dataclass
class SystemLog:
    """In-memory diagnostic entry shown on the settings view."""
    id: str
    timestamp: str
    type: LogType
    message: str
    details: Optional[str] = None

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'type': self.type.value,
            'message': self.message,
            'details': self.details,
        }


@dataclass
class CollectionStat:
    """Existence and row count of one remote collection."""
    name: str
    exists: bool
    count: int

    def to_record(self) -> dict:
        return {'name': self.name, 'exists': self.exists, 'count': self.count}

    @classmethod
    def from_record(cls, data: dict) -> 'CollectionStat':
        return cls(
            name=data.get('name') or '',
            exists=bool(data.get('exists')),
            count=int(data.get('count') or 0),
        )
