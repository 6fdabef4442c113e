"""
Session validation over an external session store.

The core never persists sessions itself. ``SessionStore`` is the narrow
interface the host implements; ``InMemorySessionStore`` is a reference
implementation for single-process use and tests.
"""

import re
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from shared.errors import InvalidArgumentError, SessionInvalidError
from shared.logging import get_logger, redact
from service_identity.app.models import SessionInfo

_SESSION_ID = re.compile(r"^[A-Za-z0-9_\-]{16,256}$")


class SessionStore(Protocol):
    async def create(self, user_id: str, provider: str) -> SessionInfo:
        ...

    async def validate(self, session_id: str) -> Optional[SessionInfo]:
        ...

    async def invalidate(self, session_id: str) -> bool:
        ...


class InMemorySessionStore:
    """Dictionary-backed session store."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, SessionInfo] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _purge(self, now: float) -> None:
        stale = [key for key, session in self._sessions.items() if not session.is_valid or session.is_expired(now)]
        for key in stale:
            del self._sessions[key]

    async def create(self, user_id: str, provider: str) -> SessionInfo:
        now = self._clock()
        session = SessionInfo(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            provider=provider,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._purge(now)
            self._sessions[session.session_id] = session
        return session

    async def validate(self, session_id: str) -> Optional[SessionInfo]:
        with self._lock:
            return self._sessions.get(session_id)

    async def invalidate(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_valid:
                return False
            self._sessions[session_id] = session.model_copy(update={"is_valid": False})
            return True


class SessionValidator:
    """Applies validation rules on top of a session store."""

    def __init__(self, store: SessionStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self.logger = get_logger("identity.sessions")

    def _require_id(self, session_id: Optional[str]) -> str:
        if session_id is None or not isinstance(session_id, str) or not session_id.strip():
            raise InvalidArgumentError("Session id is required")
        return session_id.strip()

    async def validate(self, session_id: Optional[str]) -> SessionInfo:
        """Return the live session or raise SessionInvalidError."""
        session_id = self._require_id(session_id)
        if not _SESSION_ID.match(session_id):
            self.logger.warning("Malformed session id rejected")
            raise SessionInvalidError()

        session = await self.store.validate(session_id)
        if session is None or not session.is_valid:
            self.logger.warning("Unknown or revoked session", session=redact(session_id))
            raise SessionInvalidError()
        if session.is_expired(self._clock()):
            await self.store.invalidate(session_id)
            self.logger.info("Expired session invalidated", session=redact(session_id))
            raise SessionInvalidError("Session has expired")
        return session

    async def invalidate(self, session_id: Optional[str]) -> bool:
        session_id = self._require_id(session_id)
        invalidated = await self.store.invalidate(session_id)
        if invalidated:
            self.logger.info("Session invalidated", session=redact(session_id))
        return invalidated
