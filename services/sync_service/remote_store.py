"""Remote Store Client - talks to the relay's generic document endpoint."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.errors import RelayError, RelayTimeoutError, UnauthorizedError, SchemaMissingError
from shared.models import CollectionStat, utc_now_iso

logger = logging.getLogger(__name__)

HEARTBEAT_ID = "heartbeat"


class RemoteStoreClient:
    """CRUD access to the portal collections through the relay."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/api/db", timeout: float = 10.0):
        """
        Initialize Remote Store Client.

        Args:
            client: HTTP client whose base_url points at the relay
            path: Relay endpoint path
            timeout: Deadline for every relay call, in seconds
        """
        self.client = client
        self.path = path
        self.timeout = timeout

    async def _request(self, action: str, collection: str = "", **body: Any) -> Dict[str, Any]:
        payload = {"action": action, "collection": collection}
        payload.update({k: v for k, v in body.items() if v is not None})

        try:
            response = await self.client.post(self.path, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise RelayTimeoutError(
                "SUPABASE_CONNECTION_TIMEOUT: The relay took too long. Check your Supabase URL/Key."
            ) from e
        except httpx.RequestError as e:
            raise RelayError(f"Relay unreachable: {e}") from e

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}

        if not response.is_success:
            message = result.get("error") or f"Relay Error: {response.status_code}"
            raise self._error_for_status(response.status_code, message, result.get("details"))

        return result

    @staticmethod
    def _error_for_status(status: int, message: str, details: Optional[str] = None) -> RelayError:
        if status in (401, 403):
            return UnauthorizedError(message, status=status, details=details)
        if status == 404:
            return SchemaMissingError(message, status=status, details=details)
        return RelayError(message, status=status, details=details)

    async def list(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[dict]:
        """Return every document of a collection, optionally filtered by id."""
        result = await self._request("find", collection, filter=filter or {})
        return result.get("documents") or []

    async def upsert(self, collection: str, record: Dict[str, Any]) -> str:
        """
        Insert a record or merge it into the stored record with the same id.

        Raises:
            ValueError: If the record has no id (no call is made)
        """
        if not record.get("id"):
            raise ValueError(f"Cannot upsert into {collection} without an 'id' field")

        result = await self._request("updateOne", collection, update={"$set": record})
        return result.get("upsertedId") or record["id"]

    async def delete(self, collection: str, record_id: str) -> None:
        """Delete a record by id. Deleting a missing id is not an error."""
        await self._request("deleteOne", collection, filter={"id": record_id})

    async def clear(self, collection: str) -> None:
        """Delete every record of a collection."""
        await self._request("deleteMany", collection)
        logger.info(f"Cleared remote collection {collection}")

    async def metadata(self) -> List[CollectionStat]:
        """Existence and row count for each collection."""
        result = await self._request("listCollections")
        return [CollectionStat.from_record(c) for c in result.get("collections") or []]

    async def ping(self) -> bool:
        """
        Probe the relay and the database behind it.

        Returns:
            True when the database answered; False for any other upstream status

        Raises:
            UnauthorizedError: The database rejected the relay's key
            SchemaMissingError: The database answered 404
        """
        result = await self._request("ping", "system")
        if result.get("ok") is True:
            return True

        upstream = result.get("status")
        if upstream in (401, 403, 404):
            raise self._error_for_status(
                upstream,
                "Gateway rejected the API Key" if upstream != 404 else "Data API not found",
                details=f"Upstream status {upstream}"
            )
        return False

    async def test_write(self) -> bool:
        """Write the heartbeat record to provisioning_logs."""
        result = await self._request("updateOne", "provisioning_logs", update={"$set": {
            "id": HEARTBEAT_ID,
            "status": "SUCCESS",
            "timestamp": utc_now_iso(),
        }})
        return result.get("ok") is True
