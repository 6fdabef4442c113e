"""
Shared error handling for the identity access core.

Every failure the core surfaces to its host is an ``IdentityException``
subclass carrying a stable machine-readable ``code``. Messages are built
from identifiers only; secret material never reaches a message or the
``details`` mapping.
"""

from typing import Dict, Any, Iterable, List, Optional
from pydantic import BaseModel
from opentelemetry import trace


def current_trace_id() -> Optional[str]:
    context = trace.get_current_span().get_span_context()
    return format(context.trace_id, "032x") if context.is_valid else None


class ErrorResponse(BaseModel):
    """JSON envelope returned to callers for any identity failure."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class IdentityException(Exception):
    """Base exception for the identity core."""

    http_status: int = 400
    retryable: bool = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidArgumentError(IdentityException, ValueError):
    """Bad caller input, e.g. an empty authorization code."""

    def __init__(self, message: str = "Invalid argument", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ARGUMENT", message, details)


class InvalidProviderError(IdentityException):
    """Unknown or disabled provider name."""

    http_status = 404

    def __init__(self, provider: str, message: str = "Unknown or disabled provider",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_PROVIDER", message, {"provider": provider, **(details or {})})


class InvalidCallbackError(IdentityException):
    """Callback state is missing, already consumed, expired or mismatched."""

    http_status = 400

    def __init__(self, message: str = "Invalid authorization callback", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CALLBACK", message, details)


class AuthenticationError(IdentityException):
    """The token endpoint or identity API rejected the credentials."""

    http_status = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "AUTHENTICATION_ERROR"):
        super().__init__(code, message, details)


class TokenValidationError(AuthenticationError):
    """A signed identity token was rejected.

    ``kind`` is the ``ValidationFailure`` value reported by the token
    validator; the error code mirrors it so callers can branch on the exact
    rejection without parsing messages.
    """

    def __init__(self, kind: str, message: str = "Identity token rejected",
                 details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(message, {"kind": kind, **(details or {})}, code=kind)


class SessionInvalidError(AuthenticationError):
    """Session is unknown, invalidated or expired."""

    def __init__(self, message: str = "Session is not valid", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="SESSION_INVALID")


class AuthorizationError(IdentityException):
    """Authorization-related errors (business role or permission checks)."""

    http_status = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class CsrfValidationError(IdentityException):
    """Anti-forgery token missing, mismatched or expired."""

    http_status = 403

    def __init__(self, message: str = "CSRF token validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CSRF_TOKEN_INVALID", message, details)


class ProviderUnavailableError(IdentityException):
    """Provider network failure or timeout. Retryable with a fresh flow."""

    http_status = 503
    retryable = True

    def __init__(self, provider: str, message: str = "Identity provider unavailable",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("PROVIDER_UNAVAILABLE", f"{provider}: {message}", {"provider": provider, **(details or {})})


class RateLimitError(IdentityException):
    """Caller exceeded a per-key or global request ceiling."""

    http_status = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__("RATE_LIMITED", message, details)


class ConfigurationError(IdentityException):
    """One or more providers are misconfigured.

    Carries every collected error rather than the first one found.
    """

    http_status = 500

    def __init__(self, errors: Iterable[str], message: str = "Configuration invalid"):
        self.errors: List[str] = list(errors)
        super().__init__("CONFIGURATION_INVALID", message, {"errors": self.errors})


def ensure_no_secrets(message: str, secrets: Iterable[Optional[str]]) -> str:
    """Mask any secret value that leaked into ``message``."""
    for secret in secrets:
        if secret and len(secret) >= 4 and secret in message:
            message = message.replace(secret, "***")
    return message
