"""Error taxonomy shared by the relay client, the platform client and the engine."""

from typing import Optional


class RelayError(Exception):
    """Generic relay failure (non-2xx response or transport error)."""

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details

    def __str__(self) -> str:
        return self.message


class RelayTimeoutError(RelayError, TimeoutError):
    """The relay did not answer within the request deadline."""


class UnauthorizedError(RelayError):
    """The remote store rejected the configured credentials (401/403)."""


class SchemaMissingError(RelayError):
    """The remote store is reachable but the target collection does not exist (404)."""


class NotFoundError(LookupError):
    """A referenced record is not present in local state."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class PlatformApiError(Exception):
    """Failure reported by the messaging platform API."""

    POLICY_CODES = {10}
    POLICY_SUBCODES = {2018278, 2018108}

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.subcode = subcode

    def __str__(self) -> str:
        return self.message

    @property
    def is_policy(self) -> bool:
        """True when the platform refused a send because of the messaging window."""
        if self.code in self.POLICY_CODES or self.subcode in self.POLICY_SUBCODES:
            return True
        return "outside of allowed window" in self.message.lower()


def error_details(error: Exception) -> Optional[str]:
    """Best-effort details string for display next to an error message."""
    details = getattr(error, "details", None)
    if details:
        return str(details)
    return None
