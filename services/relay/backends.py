"""Storage backends the relay forwards document actions to."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from shared.db_operations import DatabaseOperations, CollectionNotFoundError
from shared.models import COLLECTIONS

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """A backend failure that maps directly to a relay HTTP response."""

    def __init__(
        self,
        message: str,
        status: int = 500,
        details: Optional[str] = None,
        code: str = "SUPABASE_RELAY_CRITICAL"
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details
        self.code = code

    def to_response(self) -> Dict[str, Any]:
        content = {"error": self.message, "code": self.code}
        if self.details is not None:
            content["details"] = self.details
        return content


def _parse_content_range_total(value: Optional[str]) -> int:
    """Extract the total from a PostgREST ``Content-Range`` header (``0-9/42``)."""
    if not value or "/" not in value:
        return 0
    total = value.split("/", 1)[1]
    try:
        return int(total)
    except ValueError:
        return 0


class SupabaseBackend:
    """Forwards document actions to a Supabase project through PostgREST."""

    provider = "Supabase/PostgreSQL"

    def __init__(self, client: httpx.AsyncClient, url: str, key: str, project: str = ""):
        """
        Initialize Supabase backend.

        Args:
            client: Shared HTTP client (owned by the relay lifespan)
            url: Project URL, e.g. https://<project>.supabase.co
            key: Service role key
            project: Project ref reported by ping
        """
        self.client = client
        self.url = url.rstrip("/")
        self.key = key
        self.project = project

    def _table_url(self, collection: str) -> str:
        return f"{self.url}/rest/v1/{collection}"

    def _headers(self, prefer: str = "return=representation") -> Dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Prefer": prefer,
        }

    async def ping(self) -> Dict[str, Any]:
        """Probe the REST gateway and report its status code."""
        response = await self.client.get(f"{self.url}/rest/v1/", headers={"apikey": self.key})
        return {
            "ok": response.status_code in (200, 204),
            "status": response.status_code,
            "provider": self.provider,
            "project": self.project,
        }

    async def find(self, collection: str, document_id: Optional[str] = None) -> List[dict]:
        params = {"select": "*"}
        if document_id:
            params["id"] = f"eq.{document_id}"

        response = await self.client.get(
            self._table_url(collection),
            params=params,
            headers=self._headers()
        )
        if not response.is_success:
            raise BackendError(
                f"Table [{collection}] Error",
                status=response.status_code,
                details=response.text,
                code="TABLE_QUERY_FAILED"
            )

        result = response.json()
        return result if isinstance(result, list) else []

    async def upsert(self, collection: str, document: dict) -> str:
        """Insert or merge a document by id (PostgREST upsert)."""
        response = await self.client.post(
            self._table_url(collection),
            json=document,
            headers=self._headers("resolution=merge-duplicates,return=representation")
        )
        if not response.is_success:
            raise BackendError(f"Upsert Failed: {response.text}")

        result = response.json()
        if isinstance(result, list) and result and result[0].get("id"):
            return result[0]["id"]
        return document["id"]

    async def delete_one(self, collection: str, document_id: str) -> bool:
        response = await self.client.delete(
            self._table_url(collection),
            params={"id": f"eq.{document_id}"},
            headers=self._headers("return=minimal")
        )
        return response.is_success

    async def delete_many(self, collection: str) -> bool:
        # PostgREST refuses an unfiltered DELETE
        response = await self.client.delete(
            self._table_url(collection),
            params={"id": "not.is.null"},
            headers=self._headers("return=minimal")
        )
        return response.is_success

    async def _collection_stat(self, collection: str) -> Dict[str, Any]:
        try:
            response = await self.client.get(
                self._table_url(collection),
                params={"select": "count"},
                headers=self._headers("count=exact")
            )
        except httpx.HTTPError as e:
            logger.warning(f"Collection probe failed for {collection}: {e}")
            return {"name": collection, "exists": False, "count": 0}

        count = 0
        if response.is_success:
            count = _parse_content_range_total(response.headers.get("content-range"))
        return {
            "name": collection,
            "exists": response.status_code in (200, 206),
            "count": count,
        }

    async def list_collections(self) -> List[Dict[str, Any]]:
        """Report existence and row count of every portal collection."""
        return list(await asyncio.gather(*(self._collection_stat(c) for c in COLLECTIONS)))


class SqlBackend:
    """Serves document actions from a SQL database through SQLAlchemy."""

    def __init__(self, db_ops: DatabaseOperations):
        self.db_ops = db_ops
        self.provider = f"SQLAlchemy/{db_ops.engine.dialect.name}"

    async def ping(self) -> Dict[str, Any]:
        try:
            self.db_ops.ping()
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return {"ok": False, "status": 503, "provider": self.provider}
        return {"ok": True, "status": 200, "provider": self.provider}

    async def find(self, collection: str, document_id: Optional[str] = None) -> List[dict]:
        try:
            return self.db_ops.find_documents(collection, document_id)
        except CollectionNotFoundError as e:
            raise BackendError(
                f"Table [{collection}] Error",
                status=404,
                details=str(e),
                code="TABLE_QUERY_FAILED"
            ) from e

    async def upsert(self, collection: str, document: dict) -> str:
        try:
            return self.db_ops.upsert_document(collection, document)
        except CollectionNotFoundError as e:
            raise BackendError(
                f"Upsert Failed: {e}",
                status=404,
                code="TABLE_QUERY_FAILED"
            ) from e
        except ValueError as e:
            raise BackendError(f"Upsert Failed: {e}", status=400, code="INVALID_DOCUMENT") from e

    async def delete_one(self, collection: str, document_id: str) -> bool:
        try:
            self.db_ops.delete_document(collection, document_id)
        except CollectionNotFoundError:
            return False
        return True

    async def delete_many(self, collection: str) -> bool:
        try:
            deleted = self.db_ops.delete_all_documents(collection)
        except CollectionNotFoundError:
            return False
        logger.info(f"Cleared {deleted} document(s) from {collection}")
        return True

    async def list_collections(self) -> List[Dict[str, Any]]:
        return self.db_ops.collection_stats()
