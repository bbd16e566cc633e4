"""
Authenticated session for the Kii SDK.

A Session holds the one logged-in identity of a client: the current user
and its access token. It is created empty, filled by a successful
authenticate call and cleared by logout. The client owns it and passes it
to everything that needs a token.

Invariants:
    - At most one user is logged in per session
    - Reads and writes of the slot are guarded by a lock
    - Tokens are never logged
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .user import KiiUser

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenStore(Protocol):
    """Persists the access token between application runs."""

    def load(self) -> str | None: ...

    def save(self, token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Keeps the token for the lifetime of the process."""

    def __init__(self) -> None:
        self._token: str | None = None

    def load(self) -> str | None:
        return self._token

    def save(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileTokenStore:
    """Keeps the token in a small JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        return token if isinstance(token, str) else None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"access_token": token}), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass(frozen=True)
class SessionState:
    """Snapshot of the session slot."""

    user: KiiUser | None = None
    access_token: str | None = None

    @property
    def logged_in(self) -> bool:
        return self.user is not None and self.access_token is not None


class Session:
    """Process-wide authenticated identity of one client.

    Thread safety:
        Every access goes through an internal lock, so the slot can be read
        from any thread without extra synchronization.
    """

    def __init__(self, token_store: TokenStore | None = None) -> None:
        self._lock = threading.Lock()
        self._state = SessionState()
        self._token_store = token_store or MemoryTokenStore()

    @property
    def token_store(self) -> TokenStore:
        return self._token_store

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def current_user(self) -> KiiUser | None:
        return self.state.user

    @property
    def access_token(self) -> str | None:
        return self.state.access_token

    @property
    def logged_in(self) -> bool:
        return self.state.logged_in

    def login(self, user: KiiUser, access_token: str) -> None:
        """Install user and token as the current identity."""
        with self._lock:
            self._state = SessionState(user=user, access_token=access_token)
        self._token_store.save(access_token)
        logger.info(f"Session opened for user {user.uuid}")

    def logout(self) -> None:
        """Clear the current identity and the persisted token."""
        with self._lock:
            previous = self._state.user
            self._state = SessionState()
        self._token_store.clear()
        if previous is not None:
            logger.info(f"Session closed for user {previous.uuid}")

    def stored_token(self) -> str | None:
        """Token persisted by an earlier run, if any."""
        return self._token_store.load()
