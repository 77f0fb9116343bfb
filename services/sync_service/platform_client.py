"""Platform Sync Client - Messenger Graph API access for pages, threads and sends."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.errors import PlatformApiError
from shared.models import Conversation, Message, parse_timestamp

logger = logging.getLogger(__name__)

CONVERSATION_FIELDS = "id,snippet,updated_time,unread_count,participants"
MESSAGE_FIELDS = "id,message,from,to,created_time"


def normalize_timestamp(value: Optional[str]) -> str:
    """Convert a Graph API timestamp (``+0000`` offset) to ISO-8601."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return value or ""
    return parsed.isoformat()


class MessengerClient:
    """Client for the page-scoped endpoints of the Messenger platform."""

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        """
        Initialize Messenger client.

        Args:
            client: Shared HTTP client (owned by the service lifespan)
            base_url: Versioned Graph API root, e.g. https://graph.facebook.com/v18.0
        """
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        query = dict(params or {})
        query["access_token"] = access_token

        try:
            response = await self.client.request(
                method, f"{self.base_url}/{path.lstrip('/')}", params=query, json=json
            )
        except httpx.TimeoutException as e:
            raise PlatformApiError(f"Meta API timeout on {path}") from e
        except httpx.RequestError as e:
            raise PlatformApiError(f"Meta API unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.is_success or "error" in body:
            error = body.get("error") or {}
            raise PlatformApiError(
                error.get("message") or f"Meta API Error: {response.status_code}",
                status=response.status_code,
                code=error.get("code"),
                subcode=error.get("error_subcode")
            )
        return body

    async def fetch_page_conversations(self, page_id: str, access_token: str, limit: int) -> List[Conversation]:
        """
        Fetch the most recently updated conversations of a page.

        Args:
            page_id: Page id
            access_token: Page access token
            limit: Number of conversations to return (newest first)

        Returns:
            Conversations in platform order, keyed by the platform thread id
        """
        body = await self._request(
            "GET",
            f"{page_id}/conversations",
            access_token,
            params={"fields": CONVERSATION_FIELDS, "limit": limit, "platform": "messenger"}
        )

        conversations = []
        for item in body.get("data") or []:
            participants = (item.get("participants") or {}).get("data") or []
            customer = next((p for p in participants if p.get("id") != page_id), {})
            if not customer.get("id"):
                logger.debug(f"Skipping conversation {item.get('id')} without a customer participant")
                continue

            conversations.append(Conversation(
                id=item["id"],
                page_id=page_id,
                customer_id=customer["id"],
                customer_name=customer.get("name") or "Customer",
                last_message=item.get("snippet") or "",
                last_timestamp=normalize_timestamp(item.get("updated_time")),
                unread_count=int(item.get("unread_count") or 0),
            ))

        logger.info(f"Fetched {len(conversations)} conversation(s) for page {page_id}")
        return conversations

    async def fetch_thread_messages(
        self,
        conversation_id: str,
        page_id: str,
        access_token: str,
        limit: int = 50
    ) -> List[Message]:
        """Fetch the latest messages of one conversation, oldest first."""
        body = await self._request(
            "GET",
            f"{conversation_id}/messages",
            access_token,
            params={"fields": MESSAGE_FIELDS, "limit": limit}
        )

        messages = []
        for item in body.get("data") or []:
            sender = item.get("from") or {}
            messages.append(Message(
                id=item["id"],
                conversation_id=conversation_id,
                sender_id=sender.get("id") or "",
                sender_name=sender.get("name") or "",
                text=item.get("message") or "",
                timestamp=normalize_timestamp(item.get("created_time")),
                is_incoming=sender.get("id") != page_id,
                is_read=sender.get("id") == page_id,
            ))

        # Graph returns newest first
        messages.reverse()
        return messages

    async def send_page_message(
        self,
        recipient_id: str,
        text: str,
        access_token: str,
        tag: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a text message to a customer on behalf of the page.

        Args:
            recipient_id: Page-scoped id of the customer
            text: Message body
            access_token: Page access token
            tag: Message tag (e.g. HUMAN_AGENT) for sends outside the 24h window

        Returns:
            Platform response with recipient_id and message_id

        Raises:
            PlatformApiError: If the platform refuses the send (see ``is_policy``)
        """
        payload: Dict[str, Any] = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "messaging_type": "MESSAGE_TAG" if tag else "RESPONSE",
        }
        if tag:
            payload["tag"] = tag

        result = await self._request("POST", "me/messages", access_token, json=payload)
        logger.info(f"Sent message to {recipient_id} (tag={tag})")
        return result

    async def verify_page_access_token(self, page_id: str, access_token: str) -> bool:
        """Check that the token can read the page it is stored for."""
        if not access_token:
            return False
        try:
            body = await self._request("GET", page_id, access_token, params={"fields": "id,name"})
        except PlatformApiError as e:
            logger.warning(f"Token verification failed for page {page_id}: {e}")
            return False
        return body.get("id") == page_id

    async def fetch_customer_profile(self, customer_id: str, access_token: str) -> Dict[str, Any]:
        """Fetch a customer's public profile (name, profile_pic)."""
        return await self._request(
            "GET", customer_id, access_token, params={"fields": "first_name,last_name,profile_pic"}
        )

    async def download_avatar(self, url: str) -> bytes:
        """Download an avatar image."""
        try:
            response = await self.client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PlatformApiError(f"Avatar download failed: {e}") from e
        return response.content
