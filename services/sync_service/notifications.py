"""Operator notifications for portal connection failures."""

import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts critical connection failures to an operator webhook."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize notification service.

        Args:
            client: HTTP client to post with; a short-lived one is opened per
                    notification when omitted
        """
        self.notification_enabled = os.getenv("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.notification_webhook = os.getenv("NOTIFICATION_WEBHOOK_URL")
        self.client = client

    async def send_connection_failure(
        self,
        status: str,
        error_message: str,
        details: Optional[str] = None
    ) -> bool:
        """
        Notify operators that the portal could not reach its data store.

        Args:
            status: Connection status the engine ended in (error or uninitialized)
            error_message: Short error message
            details: Optional longer explanation

        Returns:
            True if a notification was delivered
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping {status} notification")
            return False

        notification_message = (
            f"MessengerFlow portal is {status}\n"
            f"Error: {error_message}\n"
        )
        if details:
            notification_message += f"Details: {details}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {notification_message}")

        if not self.notification_webhook:
            return False

        payload = {
            "text": notification_message,
            "status": status,
            "error": error_message,
            "details": details,
        }
        try:
            if self.client is not None:
                response = await self.client.post(self.notification_webhook, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.notification_webhook, json=payload, timeout=10.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification: {e}")
            return False

        logger.info(f"Notification sent for {status} status")
        return True
