"""Synchronization engine - owns portal state, polls the platform and persists mutations."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional
from uuid import uuid4

from shared.errors import (
    NotFoundError,
    PlatformApiError,
    RelayError,
    SchemaMissingError,
    UnauthorizedError,
)
from shared.models import (
    Agent,
    ApprovedLink,
    ApprovedMedia,
    CollectionStat,
    ConnectionStatus,
    Conversation,
    ConversationStatus,
    LogType,
    Message,
    Page,
    SystemLog,
    UserRole,
    is_newer,
    parse_timestamp,
    utc_now_iso,
)
from services.sync_service.notifications import NotificationService
from services.sync_service.platform_client import MessengerClient
from services.sync_service.poller import PollLoop
from services.sync_service.remote_store import RemoteStoreClient
from services.sync_service.session import SessionStore, authenticate

logger = logging.getLogger(__name__)

MAX_LOGS = 50
MESSAGING_WINDOW = timedelta(hours=24)
HUMAN_AGENT_TAG = "HUMAN_AGENT"

DEFAULT_POLL_CONFIG = {
    "list_interval": 5.0,
    "thread_interval": 2.5,
    "quick_sync_limit": 5,
    "deep_sync_limit": 100,
}


@dataclass
class MutationResult:
    """Outcome of a two-phase mutation: local apply, then remote persist."""
    applied_locally: bool
    confirmed_remotely: bool
    error: Optional[Exception] = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> "MutationResult":
        if self.error is not None:
            raise self.error
        return self


@dataclass
class SyncResult:
    """Counters for one list-level sync tick."""
    pages_synced: int = 0
    pages_failed: int = 0
    conversations_written: int = 0


@dataclass
class AppState:
    """Every in-memory collection plus connection and session state."""
    status: ConnectionStatus = ConnectionStatus.INITIALIZING
    db_error: Optional[str] = None
    db_name: str = "Supabase Cloud"
    current_user: Optional[Agent] = None
    agents: Dict[str, Agent] = field(default_factory=dict)
    pages: Dict[str, Page] = field(default_factory=dict)
    conversations: Dict[str, Conversation] = field(default_factory=dict)
    messages: Dict[str, Message] = field(default_factory=dict)
    approved_links: Dict[str, ApprovedLink] = field(default_factory=dict)
    approved_media: Dict[str, ApprovedMedia] = field(default_factory=dict)
    collections: List[CollectionStat] = field(default_factory=list)
    logs: Deque[SystemLog] = field(default_factory=lambda: deque(maxlen=MAX_LOGS))
    open_conversation_id: Optional[str] = None
    is_history_synced: bool = False
    last_sync_time: Optional[str] = None


def window_expired(last_timestamp: Optional[str], now: Optional[datetime] = None) -> bool:
    """True when the customer's last activity is more than 24h old."""
    last = parse_timestamp(last_timestamp)
    if last is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - last > MESSAGING_WINDOW


def _sort_key(timestamp: str) -> datetime:
    return parse_timestamp(timestamp) or datetime.min.replace(tzinfo=timezone.utc)


def _apply_changes(record, changes: Dict[str, Any]):
    allowed = {f.name for f in fields(record)} - {"id"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return replace(record, **changes)


def _parse_records(model, records: Iterable[dict], collection: str) -> Dict[str, Any]:
    parsed = {}
    for record in records:
        try:
            item = model.from_record(record)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed {collection} record {record.get('id')}: {e}")
            continue
        parsed[item.id] = item
    return parsed


class SyncEngine:
    """
    Single owner of the portal state.

    Runs two poll loops: the list-level poll refreshes the most recent
    conversations of every page, and the thread-level poll fetches the
    messages of the conversation that is currently open. All state is mutated
    from the event loop only.
    """

    def __init__(
        self,
        store: RemoteStoreClient,
        platform: MessengerClient,
        session_store: SessionStore,
        admin: Agent,
        notifications: Optional[NotificationService] = None,
        poll_config: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the sync engine.

        Args:
            store: Remote store client (relay)
            platform: Messenger platform client
            session_store: Persisted login session
            admin: Built-in super-admin account
            notifications: Operator notifications for connection failures
            poll_config: Intervals and fetch sizes, see ``get_poll_config``
        """
        self.store = store
        self.platform = platform
        self.session_store = session_store
        self.admin = admin
        self.notifications = notifications or NotificationService()
        self.poll_config = {**DEFAULT_POLL_CONFIG, **(poll_config or {})}
        self.state = AppState()

        self._sync_lock = asyncio.Lock()
        self._thread_lock = asyncio.Lock()
        self._loading = False

        self.list_loop = PollLoop(
            "list", self.poll_config["list_interval"], self._list_tick, self._list_poll_active
        )
        self.thread_loop = PollLoop(
            "thread", self.poll_config["thread_interval"], self._thread_tick, self._thread_poll_active
        )

    # Diagnostics

    def add_log(self, log_type: LogType, message: str, details: Optional[str] = None) -> SystemLog:
        """Record a diagnostic entry (newest first, capped at 50) and mirror it to the logger."""
        entry = SystemLog(
            id=uuid4().hex[:9],
            timestamp=utc_now_iso(),
            type=log_type,
            message=message,
            details=details,
        )
        self.state.logs.appendleft(entry)

        text = f"{message}: {details}" if details else message
        if log_type == LogType.ERROR:
            logger.error(text)
        else:
            logger.info(text)
        return entry

    # Connection status and poll loops

    def _online(self) -> bool:
        return (
            not self._loading
            and self.state.status in (ConnectionStatus.CONNECTED, ConnectionStatus.SYNCING)
        )

    def _list_poll_active(self) -> bool:
        return self._online() and self.state.current_user is not None and bool(self.state.pages)

    def _thread_poll_active(self) -> bool:
        return (
            self._online()
            and self.state.current_user is not None
            and self.state.open_conversation_id in self.state.conversations
        )

    def _reconcile_pollers(self) -> None:
        for loop, active in ((self.list_loop, self._list_poll_active()),
                             (self.thread_loop, self._thread_poll_active())):
            if active and not loop.running:
                loop.start()
            elif not active and loop.running:
                loop.stop()

    def _set_status(self, status: ConnectionStatus) -> None:
        self.state.status = status
        if status != ConnectionStatus.SYNCING:
            self._reconcile_pollers()

    async def _list_tick(self) -> None:
        await self.sync_conversations()

    async def _thread_tick(self) -> None:
        try:
            await self.sync_open_thread()
        except (PlatformApiError, RelayError) as e:
            logger.warning(f"Thread poll failed for {self.state.open_conversation_id}: {e}")

    async def shutdown(self) -> None:
        """Cancel both poll loops."""
        await self.list_loop.aclose()
        await self.thread_loop.aclose()

    # Startup

    async def _fail(
        self,
        status: ConnectionStatus,
        message: str,
        details: Optional[str] = None,
        db_error: Optional[str] = None
    ) -> ConnectionStatus:
        self.state.db_error = db_error or details or message
        self.add_log(LogType.ERROR, message, details)
        self._set_status(status)
        await self.notifications.send_connection_failure(status.value, message, details)
        return status

    async def load(self) -> ConnectionStatus:
        """
        Probe the relay, load every collection and restore the session.

        Runs under the sync lock so no list tick overlaps a reload.

        Returns:
            The resulting connection status (connected, error or uninitialized)
        """
        async with self._sync_lock:
            failed = await self._load()
        if failed is None:
            self._set_status(ConnectionStatus.CONNECTED)
        return self.state.status

    async def _load(self) -> Optional[ConnectionStatus]:
        self._loading = True
        self.state.status = ConnectionStatus.SYNCING
        self._reconcile_pollers()
        self.state.db_error = None
        self.add_log(LogType.INFO, "Probing Supabase Data API...")

        try:
            try:
                ok = await self.store.ping()
            except UnauthorizedError as e:
                ok = False
                logger.warning(f"Ping rejected: {e}")
            except SchemaMissingError as e:
                return await self._fail(ConnectionStatus.UNINITIALIZED, "Tables Not Found", e.message)
            except RelayError as e:
                return await self._fail(ConnectionStatus.ERROR, "Sync Failure", e.message)

            if not ok:
                return await self._fail(
                    ConnectionStatus.ERROR,
                    "Auth Failed",
                    "Gateway rejected the API Key (401/403). Ensure you use the Service Role JWT.",
                    db_error="Supabase Key rejected. Check Project Settings."
                )

            self.add_log(LogType.SUCCESS, "Handshake Verified. Checking schema...")

            names = ["agents", "pages", "conversations", "messages", "links", "media"]
            results = await asyncio.gather(*(self.store.list(n) for n in names), return_exceptions=True)
            errors = [r for r in results if isinstance(r, BaseException)]
            for error in errors:
                if not isinstance(error, RelayError):
                    raise error
            if any(isinstance(e, SchemaMissingError) for e in errors):
                return await self._fail(
                    ConnectionStatus.UNINITIALIZED,
                    "Tables Not Found",
                    "Key is valid, but schema is missing. Run the SQL script."
                )
            if errors:
                return await self._fail(ConnectionStatus.ERROR, "Sync Failure", errors[0].message)

            agents, pages, conversations, messages, links, media = results
            self.state.agents = _parse_records(Agent, agents, "agents")
            self.state.pages = _parse_records(Page, pages, "pages")
            self._replace_conversations(conversations)
            self.state.messages = _parse_records(Message, messages, "messages")
            self.state.approved_links = _parse_records(ApprovedLink, links, "links")
            self.state.approved_media = _parse_records(ApprovedMedia, media, "media")
            if self.state.open_conversation_id not in self.state.conversations:
                self.state.open_conversation_id = None

            self.add_log(LogType.SUCCESS, "Portal Synchronized.")
            await self.refresh_metadata()
            self.state.current_user = self._restore_session()
        finally:
            self._loading = False
        return None

    def _restore_session(self) -> Optional[Agent]:
        stored = self.session_store.load()
        if stored is None:
            return None
        if stored.id == self.admin.id:
            return self.admin
        agent = self.state.agents.get(stored.id)
        if agent is None:
            logger.info(f"Stored session user {stored.id} no longer exists, clearing session")
            self.session_store.clear()
        return agent

    def _replace_conversations(self, records: Iterable[dict]) -> None:
        fresh = _parse_records(Conversation, records, "conversations")
        for conv_id, conv in fresh.items():
            previous = self.state.conversations.get(conv_id)
            if previous is not None and previous.customer_avatar_blob is not None:
                conv.customer_avatar_blob = previous.customer_avatar_blob
        self.state.conversations = fresh

    # List-level poll

    async def sync_conversations(self, limit: Optional[int] = None, wait: bool = False) -> Optional[SyncResult]:
        """
        Refresh the most recent conversations of every page with a token.

        A call made while another sync runs returns None without any network
        call, unless ``wait`` is set, in which case it runs after the other.

        Args:
            limit: Conversations to fetch per page (defaults to the quick-sync size)
            wait: Queue behind an in-flight sync instead of skipping

        Returns:
            Per-tick counters, or None if the sync was skipped
        """
        if self._sync_lock.locked() and not wait:
            logger.debug("Conversation sync already in progress, skipping")
            return None

        async with self._sync_lock:
            if self.state.status != ConnectionStatus.CONNECTED:
                logger.info(f"Skipping conversation sync while {self.state.status.value}")
                return None
            return await self._sync_pages(limit or self.poll_config["quick_sync_limit"])

    async def sync_full_history(self) -> Optional[SyncResult]:
        """Deep sync: the same merge with the large per-page limit."""
        self.state.is_history_synced = True
        return await self.sync_conversations(self.poll_config["deep_sync_limit"], wait=True)

    async def _sync_pages(self, limit: int) -> SyncResult:
        self._set_status(ConnectionStatus.SYNCING)
        result = SyncResult()
        try:
            pages = [p for p in self.state.pages.values() if p.access_token]
            outcomes = await asyncio.gather(
                *(self._sync_page(page, limit) for page in pages),
                return_exceptions=True
            )

            for page, outcome in zip(pages, outcomes):
                if isinstance(outcome, BaseException):
                    result.pages_failed += 1
                    self.add_log(LogType.ERROR, f"Sync failed for page {page.name or page.id}", str(outcome))
                else:
                    result.pages_synced += 1
                    result.conversations_written += outcome

            try:
                records = await self.store.list("conversations")
            except RelayError as e:
                self.add_log(LogType.ERROR, "Conversation reload failed", e.message)
            else:
                self._replace_conversations(records)

            self.state.last_sync_time = utc_now_iso()
            logger.info(
                f"Conversation sync done: {result.pages_synced} page(s) ok, "
                f"{result.pages_failed} failed, {result.conversations_written} written"
            )
        finally:
            if self.state.status == ConnectionStatus.SYNCING:
                self._set_status(ConnectionStatus.CONNECTED)
        return result

    async def _sync_page(self, page: Page, limit: int) -> int:
        remote = await self.platform.fetch_page_conversations(page.id, page.access_token, limit)

        written = 0
        for conv in remote:
            local = self.state.conversations.get(conv.id)
            if local is not None and not is_newer(conv.last_timestamp, local.last_timestamp):
                continue

            await self.store.upsert("conversations", self._merge_conversation(local, conv).to_record())
            # Local state may have changed while the write was in flight
            self.state.conversations[conv.id] = self._merge_conversation(
                self.state.conversations.get(conv.id), conv
            )
            written += 1
        return written

    @staticmethod
    def _merge_conversation(local: Optional[Conversation], remote: Conversation) -> Conversation:
        """Remote record wins; fields the platform does not know come from local."""
        if local is None:
            return remote
        return replace(
            remote,
            status=local.status,
            assigned_agent_id=local.assigned_agent_id,
            customer_avatar=remote.customer_avatar or local.customer_avatar,
            customer_avatar_blob=local.customer_avatar_blob,
        )

    # Thread-level poll

    def open_conversation(self, conversation_id: str) -> Conversation:
        """Select the conversation whose thread is polled."""
        conv = self.get_conversation(conversation_id)
        self.state.open_conversation_id = conversation_id
        self._reconcile_pollers()
        return conv

    def close_conversation(self) -> None:
        self.state.open_conversation_id = None
        self._reconcile_pollers()

    async def sync_open_thread(self) -> int:
        """
        Fetch the open conversation's messages and insert the ones not seen yet.
        A call made while another thread fetch is in flight is skipped.

        Returns:
            Number of new messages
        """
        if self._thread_lock.locked():
            logger.debug("Thread sync already running, skipping")
            return 0

        async with self._thread_lock:
            return await self._sync_open_thread()

    async def _sync_open_thread(self) -> int:
        conv = self.state.conversations.get(self.state.open_conversation_id or "")
        if conv is None:
            return 0
        page = self.state.pages.get(conv.page_id)
        if page is None or not page.access_token:
            return 0

        remote = await self.platform.fetch_thread_messages(conv.id, page.id, page.access_token)
        new_messages = [m for m in remote if m.id not in self.state.messages]
        if not new_messages:
            return 0

        result = await self.bulk_add_messages(new_messages)
        if result.error is not None:
            logger.warning(f"Some thread messages for {conv.id} were not persisted: {result.error}")
        return len(result.value or [])

    # Persistence helpers

    async def _persist(self, collection: str, record: Dict[str, Any], value: Any = None) -> MutationResult:
        try:
            await self.store.upsert(collection, record)
        except RelayError as e:
            logger.warning(f"Persisting {collection}/{record.get('id')} failed: {e}")
            return MutationResult(True, False, e, value)
        return MutationResult(True, True, None, value)

    async def _remove(self, collection: str, record_id: str, existed: bool) -> MutationResult:
        try:
            await self.store.delete(collection, record_id)
        except RelayError as e:
            logger.warning(f"Deleting {collection}/{record_id} failed: {e}")
            return MutationResult(existed, False, e)
        return MutationResult(existed, True)

    # Conversations

    def get_conversation(self, conversation_id: str) -> Conversation:
        conv = self.state.conversations.get(conversation_id)
        if conv is None:
            raise NotFoundError("Conversation", conversation_id)
        return conv

    def sorted_conversations(self) -> List[Conversation]:
        """Conversations, most recent activity first."""
        return sorted(
            self.state.conversations.values(),
            key=lambda c: _sort_key(c.last_timestamp),
            reverse=True
        )

    def thread_messages(self, conversation_id: str) -> List[Message]:
        """Messages of one conversation, oldest first."""
        return sorted(
            (m for m in self.state.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: _sort_key(m.timestamp)
        )

    async def update_conversation(self, conversation_id: str, **changes: Any) -> MutationResult:
        conv = self.get_conversation(conversation_id)
        if "status" in changes:
            changes["status"] = ConversationStatus(changes["status"])
        updated = _apply_changes(conv, changes)
        self.state.conversations[conversation_id] = updated
        return await self._persist("conversations", updated.to_record(), updated)

    async def set_conversation_status(self, conversation_id: str, status: ConversationStatus) -> MutationResult:
        return await self.update_conversation(conversation_id, status=status)

    async def mark_conversation_read(self, conversation_id: str) -> MutationResult:
        return await self.update_conversation(conversation_id, unread_count=0)

    async def delete_conversation(self, conversation_id: str) -> MutationResult:
        """Delete a conversation and its messages, locally then remotely."""
        existed = self.state.conversations.pop(conversation_id, None) is not None
        message_ids = [m.id for m in self.state.messages.values() if m.conversation_id == conversation_id]
        for message_id in message_ids:
            del self.state.messages[message_id]
        if self.state.open_conversation_id == conversation_id:
            self.close_conversation()

        result = await self._remove("conversations", conversation_id, existed)
        for message_id in message_ids:
            removed = await self._remove("messages", message_id, True)
            if removed.error is not None and result.error is None:
                result = MutationResult(existed, False, removed.error)
        return result

    # Messages

    async def add_message(self, message: Message) -> MutationResult:
        """Insert a message; an id already present locally is a no-op."""
        if message.id in self.state.messages:
            return MutationResult(False, False, None, message)
        self.state.messages[message.id] = message
        return await self._persist("messages", message.to_record(), message)

    async def bulk_add_messages(self, messages: Iterable[Message]) -> MutationResult:
        added: List[Message] = []
        for message in messages:
            if message.id in self.state.messages:
                continue
            self.state.messages[message.id] = message
            added.append(message)

        error = None
        for message in added:
            persisted = await self._persist("messages", message.to_record())
            error = error or persisted.error
        return MutationResult(bool(added), error is None and bool(added), error, added)

    async def send_message(self, conversation_id: str, text: str) -> MutationResult:
        """
        Send an agent reply through the platform, then record it.

        Outside the 24h messaging window the send carries the HUMAN_AGENT tag.
        A platform refusal is returned in the result; nothing is recorded.
        """
        text = text.strip()
        if not text:
            raise ValueError("Message text is empty")

        conv = self.get_conversation(conversation_id)
        page = self.state.pages.get(conv.page_id)
        if page is None or not page.access_token:
            return MutationResult(False, False, PlatformApiError(f"Page {conv.page_id} is not connected"))

        tag = HUMAN_AGENT_TAG if window_expired(conv.last_timestamp) else None
        try:
            response = await self.platform.send_page_message(conv.customer_id, text, page.access_token, tag)
        except PlatformApiError as e:
            logger.warning(f"Send to {conv.customer_id} failed (policy={e.is_policy}): {e}")
            return MutationResult(False, False, e)

        message = Message(
            id=response.get("message_id") or f"msg-{int(time.time() * 1000)}",
            conversation_id=conv.id,
            sender_id=page.id,
            sender_name=page.name,
            text=text,
            timestamp=utc_now_iso(),
            is_incoming=False,
            is_read=True,
        )
        return await self.add_message(message)

    # Agents and session

    async def add_agent(self, agent: Agent) -> MutationResult:
        self.state.agents[agent.id] = agent
        return await self._persist("agents", agent.to_record(), agent)

    async def remove_agent(self, agent_id: str) -> MutationResult:
        existed = self.state.agents.pop(agent_id, None) is not None
        return await self._remove("agents", agent_id, existed)

    async def update_user(self, agent_id: str, **changes: Any) -> MutationResult:
        """Update an agent; refreshes the current user and stored session when it is the same id."""
        agent = self.state.agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if "role" in changes:
            changes["role"] = UserRole(changes["role"])
        if "assigned_page_ids" in changes:
            changes["assigned_page_ids"] = set(changes["assigned_page_ids"])
        updated = _apply_changes(agent, changes)
        self.state.agents[agent_id] = updated

        if self.state.current_user is not None and self.state.current_user.id == agent_id:
            self.state.current_user = updated
            self.session_store.save(updated)
        return await self._persist("agents", updated.to_record(), updated)

    def login(self, email: str, password: str) -> Optional[Agent]:
        """
        Log in as the super-admin or an agent.

        Returns:
            The logged-in user, or None for wrong credentials
        """
        user = authenticate(email, password, self.admin, self.state.agents.values())
        if user is None:
            logger.info(f"Login failed for {email}")
            return None

        self.state.current_user = user
        self.session_store.save(user)
        logger.info(f"User {user.id} logged in")
        self._reconcile_pollers()
        return user

    def logout(self) -> None:
        self.session_store.clear()
        if self.state.current_user is not None:
            logger.info(f"User {self.state.current_user.id} logged out")
        self.state.current_user = None
        self.state.open_conversation_id = None
        self._reconcile_pollers()

    # Pages

    async def add_page(self, page: Page) -> MutationResult:
        self.state.pages[page.id] = page
        result = await self._persist("pages", page.to_record(), page)
        self._reconcile_pollers()
        return result

    async def remove_page(self, page_id: str) -> MutationResult:
        existed = self.state.pages.pop(page_id, None) is not None
        result = await self._remove("pages", page_id, existed)
        self._reconcile_pollers()
        return result

    async def update_page(self, page_id: str, **changes: Any) -> MutationResult:
        page = self.state.pages.get(page_id)
        if page is None:
            raise NotFoundError("Page", page_id)
        updated = _apply_changes(page, changes)
        self.state.pages[page_id] = updated
        return await self._persist("pages", updated.to_record(), updated)

    async def verify_page_connection(self, page_id: str) -> bool:
        """Check the page token against the platform and record the outcome on the page."""
        page = self.state.pages.get(page_id)
        if page is None:
            return False

        connected = await self.platform.verify_page_access_token(page.id, page.access_token)
        if connected != page.is_connected:
            await self.update_page(page_id, is_connected=connected)
        return connected

    # Quick-reply catalog

    async def add_approved_link(self, link: ApprovedLink) -> MutationResult:
        self.state.approved_links[link.id] = link
        return await self._persist("links", link.to_record(), link)

    async def remove_approved_link(self, link_id: str) -> MutationResult:
        existed = self.state.approved_links.pop(link_id, None) is not None
        return await self._remove("links", link_id, existed)

    async def add_approved_media(self, media: ApprovedMedia) -> MutationResult:
        self.state.approved_media[media.id] = media
        return await self._persist("media", media.to_record(), media)

    async def remove_approved_media(self, media_id: str) -> MutationResult:
        existed = self.state.approved_media.pop(media_id, None) is not None
        return await self._remove("media", media_id, existed)

    # Admin

    async def refresh_metadata(self) -> List[CollectionStat]:
        try:
            self.state.collections = await self.store.metadata()
        except RelayError as e:
            self.add_log(LogType.ERROR, "Metadata Refresh Failed", e.message)
        return self.state.collections

    async def force_write_test(self) -> bool:
        """Write the heartbeat record and report whether the relay confirmed it."""
        try:
            ok = await self.store.test_write()
        except RelayError as e:
            self.add_log(LogType.ERROR, "Write Test Failed", e.message)
            return False

        if ok:
            self.add_log(LogType.SUCCESS, "Write Test Succeeded", "Heartbeat stored in provisioning_logs")
        else:
            self.add_log(LogType.ERROR, "Write Test Failed", "Relay did not confirm the heartbeat write")
        return ok

    async def provision_database(self) -> bool:
        ok = await self.force_write_test()
        await self.refresh_metadata()
        return ok

    async def clear_local_chats(self) -> MutationResult:
        """Delete every conversation and message remotely, then reload the portal."""
        try:
            await self.store.clear("conversations")
            await self.store.clear("messages")
        except RelayError as e:
            self.add_log(LogType.ERROR, "Clear Chats Failed", e.message)
            return MutationResult(False, False, e)

        self.add_log(LogType.INFO, "Chats cleared, reloading portal")
        self.state.open_conversation_id = None
        await self.load()
        return MutationResult(True, True)

    async def ensure_avatar(self, conversation_id: str) -> Optional[bytes]:
        """Fill the transient avatar blob of a conversation, fetching the picture URL if needed."""
        conv = self.get_conversation(conversation_id)
        if conv.customer_avatar_blob is not None:
            return conv.customer_avatar_blob

        try:
            url = conv.customer_avatar
            if not url:
                page = self.state.pages.get(conv.page_id)
                if page is None or not page.access_token:
                    return None
                profile = await self.platform.fetch_customer_profile(conv.customer_id, page.access_token)
                url = profile.get("profile_pic")
                if not url:
                    return None
                await self.update_conversation(conversation_id, customer_avatar=url)
            blob = await self.platform.download_avatar(url)
        except PlatformApiError as e:
            logger.warning(f"Avatar unavailable for {conversation_id}: {e}")
            return None

        conv = self.state.conversations.get(conversation_id)
        if conv is not None:
            conv.customer_avatar_blob = blob
        return blob

    # Read model

    def dashboard_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counters and a seven-day activity chart computed from local state."""
        now = now or datetime.now(timezone.utc)
        today = now.date()
        conversations = list(self.state.conversations.values())

        def day_of(conv: Conversation):
            parsed = parse_timestamp(conv.last_timestamp)
            return parsed.date() if parsed else None

        chart = []
        for offset in range(6, -1, -1):
            day = today - timedelta(days=offset)
            chart.append({
                "name": day.strftime("%a"),
                "conversations": sum(1 for c in conversations if day_of(c) == day),
            })

        return {
            "openChats": sum(1 for c in conversations if c.status == ConversationStatus.OPEN),
            "pendingChats": sum(1 for c in conversations if c.status == ConversationStatus.PENDING),
            "resolvedToday": sum(
                1 for c in conversations
                if c.status == ConversationStatus.RESOLVED and day_of(c) == today
            ),
            "totalConversations": len(conversations),
            "unreadMessages": sum(c.unread_count for c in conversations),
            "avgResponseTime": self._average_response_time(),
            "chartData": chart,
        }

    def _average_response_time(self) -> Optional[str]:
        delays = []
        by_conversation: Dict[str, List[Message]] = {}
        for message in self.state.messages.values():
            by_conversation.setdefault(message.conversation_id, []).append(message)

        for thread in by_conversation.values():
            waiting_since = None
            for message in sorted(thread, key=lambda m: _sort_key(m.timestamp)):
                sent = parse_timestamp(message.timestamp)
                if sent is None:
                    continue
                if message.is_incoming:
                    waiting_since = waiting_since or sent
                elif waiting_since is not None:
                    delays.append((sent - waiting_since).total_seconds())
                    waiting_since = None

        if not delays:
            return None
        average = int(sum(delays) / len(delays))
        return f"{average // 60}m {average % 60}s"

    def snapshot(self) -> Dict[str, Any]:
        """Connection, session and sync state for the view layer."""
        user = self.state.current_user
        return {
            "status": self.state.status.value,
            "dbName": self.state.db_name,
            "dbError": self.state.db_error,
            "currentUser": user.to_record(include_password=False) if user else None,
            "lastSyncTime": self.state.last_sync_time,
            "isHistorySynced": self.state.is_history_synced,
            "isPolling": self._sync_lock.locked(),
            "openConversationId": self.state.open_conversation_id,
            "loops": {"list": self.list_loop.running, "thread": self.thread_loop.running},
            "counts": {
                "agents": len(self.state.agents),
                "pages": len(self.state.pages),
                "conversations": len(self.state.conversations),
                "messages": len(self.state.messages),
                "links": len(self.state.approved_links),
                "media": len(self.state.approved_media),
            },
        }
