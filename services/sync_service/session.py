"""Session/Auth - credential check and the persisted login session."""

import hmac
import json
import logging
import os
import tempfile
from typing import Dict, Iterable, Optional

from cryptography.fernet import InvalidToken

from shared.encryption import SessionCipher
from shared.models import Agent, UserRole

logger = logging.getLogger(__name__)

SESSION_KEY = "messengerflow_supabase_session_v1"


def build_admin(credentials: Dict[str, str]) -> Agent:
    """Build the built-in super-admin from its configured credentials."""
    return Agent(
        id=credentials["id"],
        name=credentials["name"],
        email=credentials["email"],
        password=credentials["password"],
        role=UserRole.SUPER_ADMIN,
        avatar=credentials.get("avatar", ""),
    )


def _matches(agent: Agent, email: str, password: str) -> bool:
    email_ok = hmac.compare_digest(agent.email.encode(), email.encode())
    password_ok = hmac.compare_digest(agent.password.encode(), password.encode())
    return email_ok and password_ok and bool(agent.password)


def authenticate(email: str, password: str, admin: Agent, agents: Iterable[Agent]) -> Optional[Agent]:
    """
    Match credentials against the super-admin first, then the agent list.

    Passwords are stored in plaintext; comparison is exact.

    Returns:
        The matching user, or None
    """
    if _matches(admin, email, password):
        return admin
    for agent in agents:
        if _matches(agent, email, password):
            return agent
    return None


class LocalStorage:
    """Small JSON key/value file, the service-side stand-in for browser local storage."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Local storage at {self.path} is unreadable: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".storage-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError:
            os.unlink(tmp_path)
            raise

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class SessionStore:
    """Persists the logged-in user, encrypted, under a single fixed key."""

    def __init__(self, storage: LocalStorage, cipher: SessionCipher):
        self.storage = storage
        self.cipher = cipher

    def save(self, user: Agent) -> None:
        """Store the user record without its password."""
        token = self.cipher.seal(user.to_record(include_password=False))
        self.storage.set_item(SESSION_KEY, token)

    def load(self) -> Optional[Agent]:
        """
        Return the stored user, if any.

        A value that cannot be decrypted or parsed counts as no session.
        """
        value = self.storage.get_item(SESSION_KEY)
        if not value:
            return None
        try:
            record = self.cipher.unseal(value)
            return Agent.from_record(record)
        except (InvalidToken, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable stored session: {e}")
            return None

    def clear(self) -> None:
        self.storage.remove_item(SESSION_KEY)
