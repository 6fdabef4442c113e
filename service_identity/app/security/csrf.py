"""
Anti-forgery tokens for state-changing requests.

Tokens are random, bound to a session key and expire after ``ttl_seconds``.
"""

import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from shared.errors import CsrfValidationError, InvalidArgumentError
from shared.logging import get_logger, redact
from shared.metrics import MetricsCollector

CSRF_HEADER_NAMES = ("X-CSRF-Token", "X-XSRF-TOKEN")
CSRF_COOKIE_NAME = "XSRF-TOKEN"
PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
DEFAULT_EXEMPT_PATHS = ("/api/public", "/health", "/metrics", "/docs")


@dataclass(frozen=True)
class _IssuedToken:
    value: str
    expires_at: float


class CsrfGuard:
    """Issues and checks per-session anti-forgery tokens."""

    def __init__(self,
                 ttl_seconds: int = 86400,
                 clock: Callable[[], float] = time.time,
                 exempt_paths: Optional[Iterable[str]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.ttl_seconds = ttl_seconds
        self.exempt_paths = tuple(exempt_paths) if exempt_paths is not None else DEFAULT_EXEMPT_PATHS
        self.metrics = metrics
        self._clock = clock
        self._tokens: Dict[str, _IssuedToken] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("identity.security.csrf")

    def __len__(self) -> int:
        return len(self._tokens)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, issued in self._tokens.items() if now >= issued.expires_at]
        for key in expired:
            del self._tokens[key]

    def requires_protection(self, method: str, path: str) -> bool:
        if (method or "").upper() not in PROTECTED_METHODS:
            return False
        return not any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in self.exempt_paths)

    def issue_token(self, session_key: str) -> str:
        """Issue (or rotate) the token for ``session_key``."""
        if not session_key or not session_key.strip():
            raise InvalidArgumentError("Session key is required for CSRF tokens")
        token = secrets.token_urlsafe(32)
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            self._tokens[session_key] = _IssuedToken(token, now + self.ttl_seconds)
        return token

    def validate(self, session_key: Optional[str], token: Optional[str]) -> bool:
        if not session_key or not token:
            return False
        with self._lock:
            issued = self._tokens.get(session_key)
            if issued is None:
                return False
            if self._clock() >= issued.expires_at:
                del self._tokens[session_key]
                return False
        return hmac.compare_digest(issued.value.encode("utf-8"), token.encode("utf-8"))

    def enforce(self, session_key: Optional[str], token: Optional[str]) -> None:
        if self.validate(session_key, token):
            return
        if self.metrics is not None:
            self.metrics.record_csrf_rejection()
        self.logger.warning("CSRF token rejected", session=redact(session_key), token_present=bool(token))
        raise CsrfValidationError()

    def revoke(self, session_key: str) -> None:
        with self._lock:
            self._tokens.pop(session_key, None)
