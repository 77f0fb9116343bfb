"""Relay - FastAPI application translating document actions into database calls."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import httpx

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import get_relay_backend, get_supabase_config, get_relay_config
from shared.db_operations import DatabaseOperations
from services.relay.backends import BackendError, SupabaseBackend, SqlBackend

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
backend: Optional[Union[SupabaseBackend, SqlBackend]] = None
supabase_client: Optional[httpx.AsyncClient] = None

DEFAULT_COLLECTION = "provisioning_logs"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global backend, supabase_client

    backend_name = get_relay_backend()
    logger.info(f"Relay starting up with {backend_name} backend...")

    if backend_name == "sql":
        db_ops = DatabaseOperations()
        db_ops.create_tables()
        backend = SqlBackend(db_ops)
        logger.info("SQL backend initialized")
    else:
        config = get_supabase_config()
        if config["url"] and config["key"]:
            supabase_client = httpx.AsyncClient(timeout=get_relay_config()["timeout"])
            backend = SupabaseBackend(supabase_client, config["url"], config["key"], config["project"])
            logger.info(f"Supabase backend initialized - project: {config['project'] or config['url']}")
        else:
            logger.error("SUPABASE_URL or SUPABASE_SERVICE_KEY is not set; every request will fail")

    yield

    # Cleanup
    if supabase_client:
        await supabase_client.aclose()
    logger.info("Relay shutting down...")


# Create FastAPI application
app = FastAPI(
    title="MessengerFlow Relay",
    description="Generic document relay for the MessengerFlow inbox",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "x-client-info", "apikey", "Authorization"],
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


# Request models

class RelayRequest(BaseModel):
    """Body of a relay call."""
    action: str = Field(..., description="ping, find, updateOne, deleteOne, deleteMany or listCollections")
    collection: Optional[str] = Field(None, description="Target collection (table) name")
    filter: Optional[Dict[str, Any]] = Field(None, description="Filter, only 'id' is supported")
    update: Optional[Dict[str, Any]] = Field(None, description="Update document in the form {'$set': {...}}")


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "relay",
        "backend": get_relay_backend(),
        "configured": backend is not None
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "MessengerFlow Relay",
        "version": "0.1.0",
        "status": "running"
    }


async def dispatch(request: RelayRequest) -> Optional[Dict[str, Any]]:
    """
    Run one relay action against the configured backend.

    Returns:
        Response body, or None for an unknown action

    Raises:
        BackendError: For failures with a specific status and code
        ValueError: For malformed write or delete requests
    """
    table = request.collection or DEFAULT_COLLECTION
    document_id = (request.filter or {}).get("id")

    if request.action == "ping":
        return await backend.ping()

    if request.action == "find":
        documents = await backend.find(table, document_id)
        return {"documents": documents}

    if request.action == "updateOne":
        payload = (request.update or {}).get("$set") or {}
        if not payload.get("id"):
            raise ValueError("Upsert requires an 'id' field.")
        upserted_id = await backend.upsert(table, payload)
        return {"ok": True, "upsertedId": upserted_id}

    if request.action == "deleteOne":
        if not document_id:
            raise ValueError("Delete requires an ID.")
        return {"ok": await backend.delete_one(table, document_id)}

    if request.action == "deleteMany":
        return {"ok": await backend.delete_many(table)}

    if request.action == "listCollections":
        return {"ok": True, "collections": await backend.list_collections()}

    return None


@app.post("/api/db")
async def relay(request: RelayRequest):
    """
    Forward a document action to the database.

    Every failure is answered with a JSON error body; see ``BackendError``
    for table errors and ``SUPABASE_RELAY_CRITICAL`` for everything else.
    """
    if backend is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Supabase Credentials Missing",
                "details": "The relay is missing the project URL or Key."
            }
        )

    try:
        result = await dispatch(request)
    except BackendError as e:
        logger.warning(f"{request.action} on {request.collection} failed: {e.message}")
        return JSONResponse(status_code=e.status, content=e.to_response())
    except Exception as e:
        logger.error(f"Relay action {request.action} failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(e), "code": "SUPABASE_RELAY_CRITICAL"}
        )

    if result is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid operation"}
        )
    return result


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("RELAY_PORT", 8001))
    uvicorn.run(app, host="0.0.0.0", port=port)
