"""Sealing of the persisted login session record."""

import json
import logging
import os
from typing import Any, Dict, Optional
from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class SessionCipher:
    """
    Seals a session record into an opaque Fernet token and opens it again.

    The token is URL-safe text, so it is stored as is. A token that was not
    sealed with this key, or was edited, fails to open with InvalidToken.
    """

    def __init__(self, key: Optional[str] = None):
        """
        Args:
            key: Fernet key. Defaults to SESSION_ENCRYPTION_KEY; without either a
                 process-local key is generated and sessions do not survive a restart
        """
        key = key or os.getenv('SESSION_ENCRYPTION_KEY')
        if not key:
            logger.warning("SESSION_ENCRYPTION_KEY not set, stored sessions are valid for this process only")
            key = Fernet.generate_key().decode()

        self.key = key.encode()
        self.fernet = Fernet(self.key)

    def seal(self, record: Dict[str, Any]) -> str:
        payload = json.dumps(record, sort_keys=True, separators=(',', ':'))
        return self.fernet.encrypt(payload.encode()).decode()

    def unseal(self, token: str) -> Dict[str, Any]:
        """
        Open a sealed record.

        Raises:
            cryptography.fernet.InvalidToken: Foreign key, edited or non-token value
            ValueError: The token holds something other than a JSON object
        """
        record = json.loads(self.fernet.decrypt(token.encode()))
        if not isinstance(record, dict):
            raise ValueError(f"Sealed session is a {type(record).__name__}, not an object")
        return record

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
