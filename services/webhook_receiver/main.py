"""Webhook Receiver - FastAPI application for inbound Messenger platform events."""

import logging
import sys
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import get_webhook_verify_token

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)


# Create FastAPI application
app = FastAPI(
    title="MessengerFlow Webhook Receiver",
    description="Verification and event intake for the Messenger platform webhook",
    version="0.1.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "detail": str(exc)
            }
        )


def _dict_items(value: Any) -> List[Dict[str, Any]]:
    """Keep the dict items of a list; anything else yields nothing."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _id_of(value: Any) -> Optional[str]:
    return value.get("id") if isinstance(value, dict) else None


def extract_messaging_events(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Flatten the messaging events of a page webhook delivery.

    Entries and events that are not JSON objects, and ``entry``/``messaging``
    values that are not arrays, are skipped.

    Args:
        body: Webhook payload of the form {object, entry: [{id, time, messaging: [...]}]}

    Returns:
        One dict per event with page_id, sender_id, recipient_id, timestamp,
        kind (message, echo, read, delivery, postback or other), mid and text
    """
    events = []
    for entry in _dict_items(body.get("entry")):
        page_id = entry.get("id")
        for event in _dict_items(entry.get("messaging")):
            message = event.get("message")
            if not isinstance(message, dict):
                message = {}
            if message:
                kind = "echo" if message.get("is_echo") else "message"
            elif "read" in event:
                kind = "read"
            elif "delivery" in event:
                kind = "delivery"
            elif "postback" in event:
                kind = "postback"
            else:
                kind = "other"

            events.append({
                "page_id": page_id,
                "sender_id": _id_of(event.get("sender")),
                "recipient_id": _id_of(event.get("recipient")),
                "timestamp": event.get("timestamp"),
                "kind": kind,
                "mid": message.get("mid"),
                "text": message.get("text"),
            })
    return events


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "webhook_receiver",
        "version": "0.1.0"
    }


@app.get("/api/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge")
):
    """Answer the platform's subscription handshake by echoing the challenge."""
    if mode == "subscribe" and token == get_webhook_verify_token():
        logger.info("WEBHOOK_VERIFIED")
        return PlainTextResponse(challenge or "")

    logger.warning(f"Webhook verification failed (mode={mode})")
    return PlainTextResponse("Verification failed", status_code=status.HTTP_403_FORBIDDEN)


@app.post("/api/webhook")
async def receive_events(request: Request):
    """
    Accept a batch of page events.

    Events are parsed and logged only; conversations reach the inbox through
    the sync service's polling.
    """
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"Rejected webhook delivery with invalid JSON: {e}")
        return PlainTextResponse("Bad Request", status_code=status.HTTP_400_BAD_REQUEST)

    if not isinstance(body, dict) or body.get("object") != "page":
        return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)

    for event in extract_messaging_events(body):
        logger.info(
            f"Messenger Event Received: {event['kind']} on page {event['page_id']} "
            f"from {event['sender_id']} (mid={event['mid']})"
        )

    return PlainTextResponse("EVENT_RECEIVED")


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("WEBHOOK_RECEIVER_PORT", 8002))
    uvicorn.run(app, host="0.0.0.0", port=port)
