"""Sync Service - FastAPI application serving the inbox portal."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status, HTTPException, Depends, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import httpx

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import (
    get_admin_credentials,
    get_graph_api_config,
    get_poll_config,
    get_relay_config,
    get_session_config,
)
from shared.encryption import SessionCipher
from shared.errors import NotFoundError, error_details
from shared.models import Agent, ApprovedLink, ApprovedMedia, ConversationStatus, Page, UserRole
from services.sync_service.engine import MutationResult, SyncEngine, window_expired
from services.sync_service.notifications import NotificationService
from services.sync_service.platform_client import MessengerClient
from services.sync_service.remote_store import RemoteStoreClient
from services.sync_service.session import LocalStorage, SessionStore, build_admin
from services.sync_service.views import conversation_view, thread_view, visible_conversations, can_view

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
engine: Optional[SyncEngine] = None
relay_client: Optional[httpx.AsyncClient] = None
graph_client: Optional[httpx.AsyncClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global engine, relay_client, graph_client

    logger.info("Sync Service starting up...")

    relay_config = get_relay_config()
    graph_config = get_graph_api_config()
    relay_client = httpx.AsyncClient(base_url=relay_config["url"], timeout=relay_config["timeout"])
    graph_client = httpx.AsyncClient(timeout=graph_config["timeout"])
    logger.info(f"HTTP clients initialized - Relay: {relay_config['url']}, Graph API: {graph_config['base_url']}")

    session_config = get_session_config()
    session_store = SessionStore(
        LocalStorage(session_config["path"]),
        SessionCipher(session_config["encryption_key"])
    )

    engine = SyncEngine(
        store=RemoteStoreClient(relay_client, relay_config["path"], relay_config["timeout"]),
        platform=MessengerClient(graph_client, graph_config["base_url"]),
        session_store=session_store,
        admin=build_admin(get_admin_credentials()),
        notifications=NotificationService(),
        poll_config=get_poll_config(),
    )
    connection = await engine.load()
    logger.info(f"Portal loaded with status {connection.value}")

    yield

    # Cleanup
    await engine.shutdown()
    await relay_client.aclose()
    await graph_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Customer-support inbox over Messenger pages",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def invalid_value_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def require_user() -> Agent:
    """
    Resolve the logged-in portal user.

    Raises:
        HTTPException: 401 if nobody is logged in
    """
    user = engine.state.current_user
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not logged in"
        )
    return user


def require_admin(user: Agent = Depends(require_user)) -> Agent:
    """Resolve the logged-in user and require the super-admin role."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required"
        )
    return user


def check_mutation(result: MutationResult) -> MutationResult:
    """
    Turn a failed mutation into a 502 carrying the error message and details.

    The local change (if any) stays applied; ``appliedLocally`` tells the
    caller whether it did.
    """
    if result.error is not None:
        error = result.error
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": str(error),
                "details": error_details(error),
                "isPolicy": bool(getattr(error, "is_policy", False)),
                "appliedLocally": result.applied_locally,
            }
        )
    return result


def visible_conversation(conversation_id: str, user: Agent):
    conv = engine.get_conversation(conversation_id)
    if not can_view(conv, user, engine.state.pages):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Conversation {conversation_id} belongs to a page you are not assigned to"
        )
    return conv


def sync_response(result) -> dict:
    if result is None:
        return {"skipped": True, "status": engine.state.status.value}
    return {
        "skipped": False,
        "status": engine.state.status.value,
        "pagesSynced": result.pages_synced,
        "pagesFailed": result.pages_failed,
        "conversationsWritten": result.conversations_written,
        "lastSyncTime": engine.state.last_sync_time,
    }


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    connection = engine.state.status.value if engine else "initializing"
    return {
        "status": "healthy" if connection == "connected" else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "relay": connection
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request models
class LoginRequest(BaseModel):
    email: str
    password: str


class StatusUpdateRequest(BaseModel):
    status: ConversationStatus


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)


class AgentRequest(BaseModel):
    """Request model for creating an agent."""
    id: Optional[str] = None
    name: str
    email: str
    password: str = Field(..., min_length=1)
    role: UserRole = UserRole.AGENT
    avatar: str = ""
    assigned_page_ids: List[str] = []


class AgentUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = Field(None, min_length=1)
    role: Optional[UserRole] = None
    avatar: Optional[str] = None
    status: Optional[str] = None
    assigned_page_ids: Optional[List[str]] = None


class PageRequest(BaseModel):
    """Request model for connecting a page."""
    id: str
    name: str
    category: str = ""
    access_token: str = ""
    is_connected: bool = False
    assigned_agent_ids: List[str] = []


class PageUpdateRequest(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    access_token: Optional[str] = None
    is_connected: Optional[bool] = None
    assigned_agent_ids: Optional[List[str]] = None


class LinkRequest(BaseModel):
    id: Optional[str] = None
    title: str
    url: str
    category: str = ""


class MediaRequest(BaseModel):
    id: Optional[str] = None
    title: str
    url: str
    type: str = "image"
    is_local: bool = False


# Session

@app.post("/api/auth/login", status_code=status.HTTP_200_OK)
async def login(request: LoginRequest):
    """Log in as the super admin or an agent."""
    user = engine.login(request.email, request.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )
    return {"user": user.to_record(include_password=False)}


@app.post("/api/auth/logout", status_code=status.HTTP_200_OK)
async def logout():
    engine.logout()
    return {"ok": True}


@app.get("/api/state", status_code=status.HTTP_200_OK)
async def get_state():
    """Connection, session and sync state."""
    return engine.snapshot()


# Inbox

@app.get("/api/inbox", status_code=status.HTTP_200_OK)
async def list_inbox(
    status_filter: str = Query("ALL", alias="status"),
    search: str = "",
    user: Agent = Depends(require_user)
):
    """
    List the conversations visible to the current user, most recent first.

    Args:
        status_filter: ALL, OPEN, PENDING or RESOLVED (query parameter ``status``)
        search: Case-insensitive customer name substring
    """
    conversations = visible_conversations(
        engine.sorted_conversations(), user, engine.state.pages, status_filter, search
    )
    return {
        "conversations": [conversation_view(c, engine.state.pages) for c in conversations],
        "total": len(conversations),
    }


@app.post("/api/inbox/close", status_code=status.HTTP_200_OK)
async def close_thread(user: Agent = Depends(require_user)):
    """Close the open thread; the thread poll stops."""
    engine.close_conversation()
    return {"openConversationId": None}


@app.get("/api/inbox/{conversation_id}", status_code=status.HTTP_200_OK)
async def get_thread(conversation_id: str, user: Agent = Depends(require_user)):
    conv = visible_conversation(conversation_id, user)
    return thread_view(
        conv, engine.thread_messages(conv.id), engine.state.pages, window_expired(conv.last_timestamp)
    )


@app.post("/api/inbox/{conversation_id}", status_code=status.HTTP_200_OK)
async def open_thread(conversation_id: str, user: Agent = Depends(require_user)):
    """
    Open a conversation: it becomes the polled thread and is marked read.

    Returns:
        The thread view, including messages fetched so far
    """
    conv = visible_conversation(conversation_id, user)
    engine.open_conversation(conv.id)
    if conv.unread_count:
        check_mutation(await engine.mark_conversation_read(conv.id))
    conv = engine.get_conversation(conv.id)
    return thread_view(
        conv, engine.thread_messages(conv.id), engine.state.pages, window_expired(conv.last_timestamp)
    )


@app.delete("/api/inbox/{conversation_id}", status_code=status.HTTP_200_OK)
async def delete_thread(conversation_id: str, user: Agent = Depends(require_user)):
    visible_conversation(conversation_id, user)
    check_mutation(await engine.delete_conversation(conversation_id))
    return {"ok": True, "id": conversation_id}


@app.get("/api/inbox/{conversation_id}/avatar")
async def get_avatar(conversation_id: str, user: Agent = Depends(require_user)):
    visible_conversation(conversation_id, user)
    blob = await engine.ensure_avatar(conversation_id)
    if blob is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No avatar for conversation {conversation_id}"
        )
    return Response(content=blob, media_type="image/jpeg")


@app.patch("/api/conversations/{conversation_id}/status", status_code=status.HTTP_200_OK)
async def update_status(conversation_id: str, request: StatusUpdateRequest, user: Agent = Depends(require_user)):
    visible_conversation(conversation_id, user)
    result = check_mutation(await engine.set_conversation_status(conversation_id, request.status))
    return conversation_view(result.value, engine.state.pages)


@app.post("/api/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, request: SendMessageRequest, user: Agent = Depends(require_user)):
    """
    Send an agent reply through the page.

    Outside the 24h messaging window the reply is sent with the HUMAN_AGENT
    tag. A platform refusal comes back as 502 with ``isPolicy`` set when the
    window rule caused it.
    """
    visible_conversation(conversation_id, user)
    result = check_mutation(await engine.send_message(conversation_id, request.text))
    return {"message": result.value.to_record(), "persisted": result.confirmed_remotely}


# Sync

@app.post("/api/sync/quick", status_code=status.HTTP_200_OK)
async def quick_sync(user: Agent = Depends(require_user)):
    return sync_response(await engine.sync_conversations())


@app.post("/api/sync/deep", status_code=status.HTTP_200_OK)
async def deep_sync(user: Agent = Depends(require_user)):
    """Fetch the full conversation history of every page; waits for an in-flight sync."""
    return sync_response(await engine.sync_full_history())


@app.get("/api/dashboard", status_code=status.HTTP_200_OK)
async def get_dashboard(user: Agent = Depends(require_user)):
    return engine.dashboard_stats()


# Agents

@app.get("/api/agents", status_code=status.HTTP_200_OK)
async def list_agents(user: Agent = Depends(require_admin)):
    return {"agents": [a.to_record(include_password=False) for a in engine.state.agents.values()]}


@app.post("/api/agents", status_code=status.HTTP_201_CREATED)
async def create_agent(request: AgentRequest, user: Agent = Depends(require_admin)):
    if any(a.email == request.email for a in engine.state.agents.values()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An agent with email {request.email} already exists"
        )
    agent = Agent(
        id=request.id or f"agent-{uuid4().hex[:8]}",
        name=request.name,
        email=request.email,
        password=request.password,
        role=request.role,
        avatar=request.avatar,
        assigned_page_ids=set(request.assigned_page_ids),
    )
    check_mutation(await engine.add_agent(agent))
    return agent.to_record(include_password=False)


@app.patch("/api/agents/{agent_id}", status_code=status.HTTP_200_OK)
async def update_agent(agent_id: str, request: AgentUpdateRequest, user: Agent = Depends(require_admin)):
    result = check_mutation(await engine.update_user(agent_id, **request.model_dump(exclude_none=True)))
    return result.value.to_record(include_password=False)


@app.delete("/api/agents/{agent_id}", status_code=status.HTTP_200_OK)
async def delete_agent(agent_id: str, user: Agent = Depends(require_admin)):
    check_mutation(await engine.remove_agent(agent_id))
    return {"ok": True, "id": agent_id}


# Pages

@app.get("/api/pages", status_code=status.HTTP_200_OK)
async def list_pages(user: Agent = Depends(require_user)):
    """Pages without their access tokens."""
    pages = []
    for page in engine.state.pages.values():
        record = page.to_record()
        record.pop("accessToken")
        record["hasToken"] = bool(page.access_token)
        pages.append(record)
    return {"pages": pages}


@app.post("/api/pages", status_code=status.HTTP_201_CREATED)
async def create_page(request: PageRequest, user: Agent = Depends(require_admin)):
    page = Page(**request.model_dump())
    check_mutation(await engine.add_page(page))
    return {"id": page.id, "name": page.name}


@app.patch("/api/pages/{page_id}", status_code=status.HTTP_200_OK)
async def update_page(page_id: str, request: PageUpdateRequest, user: Agent = Depends(require_admin)):
    check_mutation(await engine.update_page(page_id, **request.model_dump(exclude_none=True)))
    return {"ok": True, "id": page_id}


@app.delete("/api/pages/{page_id}", status_code=status.HTTP_200_OK)
async def delete_page(page_id: str, user: Agent = Depends(require_admin)):
    check_mutation(await engine.remove_page(page_id))
    return {"ok": True, "id": page_id}


@app.post("/api/pages/{page_id}/verify", status_code=status.HTTP_200_OK)
async def verify_page(page_id: str, user: Agent = Depends(require_admin)):
    """Check the page token against the platform."""
    return {"id": page_id, "isConnected": await engine.verify_page_connection(page_id)}


# Quick-reply catalog

@app.get("/api/links", status_code=status.HTTP_200_OK)
async def list_links(user: Agent = Depends(require_user)):
    return {"links": [link.to_record() for link in engine.state.approved_links.values()]}


@app.post("/api/links", status_code=status.HTTP_201_CREATED)
async def create_link(request: LinkRequest, user: Agent = Depends(require_admin)):
    link = ApprovedLink(
        id=request.id or f"link-{uuid4().hex[:8]}",
        title=request.title,
        url=request.url,
        category=request.category,
    )
    check_mutation(await engine.add_approved_link(link))
    return link.to_record()


@app.delete("/api/links/{link_id}", status_code=status.HTTP_200_OK)
async def delete_link(link_id: str, user: Agent = Depends(require_admin)):
    check_mutation(await engine.remove_approved_link(link_id))
    return {"ok": True, "id": link_id}


@app.get("/api/media", status_code=status.HTTP_200_OK)
async def list_media(user: Agent = Depends(require_user)):
    return {"media": [media.to_record() for media in engine.state.approved_media.values()]}


@app.post("/api/media", status_code=status.HTTP_201_CREATED)
async def create_media(request: MediaRequest, user: Agent = Depends(require_admin)):
    media = ApprovedMedia(
        id=request.id or f"media-{uuid4().hex[:8]}",
        title=request.title,
        url=request.url,
        type=request.type,
        is_local=request.is_local,
    )
    check_mutation(await engine.add_approved_media(media))
    return media.to_record()


@app.delete("/api/media/{media_id}", status_code=status.HTTP_200_OK)
async def delete_media(media_id: str, user: Agent = Depends(require_admin)):
    check_mutation(await engine.remove_approved_media(media_id))
    return {"ok": True, "id": media_id}


# Settings

@app.get("/api/settings", status_code=status.HTTP_200_OK)
async def get_settings(user: Agent = Depends(require_admin)):
    """Diagnostics: connection status, collection stats and the system log."""
    return {
        "status": engine.state.status.value,
        "dbName": engine.state.db_name,
        "dbError": engine.state.db_error,
        "collections": [c.to_record() for c in engine.state.collections],
        "logs": [log.to_record() for log in engine.state.logs],
    }


@app.post("/api/settings/force-write", status_code=status.HTTP_200_OK)
async def force_write(user: Agent = Depends(require_admin)):
    return {"ok": await engine.force_write_test()}


@app.post("/api/settings/clear-chats", status_code=status.HTTP_200_OK)
async def clear_chats(user: Agent = Depends(require_admin)):
    """Delete every conversation and message, then reload the portal."""
    check_mutation(await engine.clear_local_chats())
    return {"ok": True, "status": engine.state.status.value}


@app.post("/api/settings/refresh-metadata", status_code=status.HTTP_200_OK)
async def refresh_metadata(user: Agent = Depends(require_admin)):
    collections = await engine.refresh_metadata()
    return {"collections": [c.to_record() for c in collections]}


@app.post("/api/settings/reload", status_code=status.HTTP_200_OK)
async def reload_portal():
    """Re-probe the relay and reload every collection."""
    connection = await engine.load()
    return {"status": connection.value, "dbError": engine.state.db_error}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
