"""
Provider contract and shared OAuth mechanics.
"""

import base64
import hashlib
import hmac
import re
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode, urlsplit

from pydantic import SecretStr, ValidationError

from shared.errors import (
    AuthenticationError,
    InvalidArgumentError,
    InvalidCallbackError,
    ensure_no_secrets,
)
from shared.logging import get_logger
from shared.secrets_manager import SecretResolver
from service_identity.app.jwks.client import JWKSClient
from service_identity.app.models import (
    AuthorizationRequest,
    ProviderCapability,
    ProviderDescriptor,
    TokenResponse,
    UserInfo,
)
from service_identity.app.settings import ProviderSettings
from service_identity.app.transport import HttpTransport, TransportResponse
from service_identity.app.validation.token_validator import (
    MAX_CLOCK_SKEW_SECONDS,
    TokenValidator,
    peek_header,
)

RESERVED_PARAMS = frozenset({
    "client_id", "client_secret", "redirect_uri", "response_type", "state", "nonce",
    "code_challenge", "code_challenge_method", "scope", "response_mode",
})
_DANGEROUS_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")
_CONTROL_CHARS = re.compile(r"[\x00-\x20\x7f]")
_UNSAFE_URL_CHARS = re.compile(r"[\x00-\x1f\x7f\\]")
_PARAM_NAME = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def _collapse(value: str) -> str:
    return _CONTROL_CHARS.sub("", value).lower()


def has_dangerous_scheme(value: str) -> bool:
    return _collapse(value).startswith(_DANGEROUS_SCHEMES)


def sanitize_return_url(return_url: Optional[str]) -> str:
    """Return a safe post-login destination, falling back to ``/``.

    Relative paths and absolute http(s) URLs are accepted. Script and data
    URIs, protocol-relative ``//host`` forms and backslash tricks are
    discarded.
    """
    if return_url is None:
        return "/"
    candidate = return_url.strip()
    if not candidate or has_dangerous_scheme(candidate):
        return "/"
    if _UNSAFE_URL_CHARS.search(candidate):
        return "/"
    if candidate.startswith("/"):
        return "/" if candidate.startswith("//") else candidate
    parts = urlsplit(candidate)
    if parts.scheme in ("http", "https") and parts.netloc:
        return candidate
    return "/"


def sanitize_extra_params(extra_params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Drop reserved, malformed or script-bearing authorization parameters."""
    cleaned: Dict[str, str] = {}
    for name, value in (extra_params or {}).items():
        if not isinstance(name, str) or not _PARAM_NAME.match(name):
            continue
        if name.lower() in RESERVED_PARAMS or value is None:
            continue
        text = str(value)
        if has_dangerous_scheme(text):
            continue
        cleaned[name] = text
    return cleaned


def generate_pkce_pair() -> Tuple[str, str]:
    """Return a PKCE verifier and its S256 challenge."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def bounded_errors(prefix: str, name: str, value: Any, low: int, high: int) -> List[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < low or value > high:
        return [f"{prefix}: {name} must be between {low} and {high}"]
    return []


class IdentityProvider(ABC):
    """
    Base class for identity providers.

    Subclasses supply the endpoint-specific parts: authorization
    parameters, the token exchange and identity resolution. State, nonce
    and PKCE generation, parameter sanitizing, ID-token validation and
    configuration checks are shared here.
    """

    name: str = ""
    requires_nonce: bool = False
    supports_policies: bool = False
    base_capabilities: FrozenSet[ProviderCapability] = frozenset()

    def __init__(self,
                 settings: ProviderSettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 validator: Optional[TokenValidator] = None,
                 redirect_base_url: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.transport = transport
        self.secret_resolver = secret_resolver
        self.redirect_base_url = redirect_base_url
        self._clock = clock
        self.validator = validator or TokenValidator(clock=clock)
        self.logger = get_logger(f"identity.providers.{self.name}")
        self.jwks: Optional[JWKSClient] = None

    # Configuration -------------------------------------------------------

    @property
    def display_name(self) -> str:
        return self.settings.display_name or self.name.title()

    @property
    def client_id(self) -> str:
        return self.settings.client_id

    @property
    def redirect_uri(self) -> str:
        if self.settings.redirect_uri:
            return self.settings.redirect_uri
        if self.redirect_base_url:
            return self.redirect_base_url.rstrip("/") + self.settings.callback_path
        return ""

    @property
    def capabilities(self) -> FrozenSet[ProviderCapability]:
        return self.base_capabilities

    def descriptor(self, enabled: bool = True) -> ProviderDescriptor:
        return ProviderDescriptor(
            name=self.name,
            display_name=self.display_name,
            enabled=enabled,
            capabilities=self.capabilities,
        )

    def resolve_secret(self, key: str, configured: Optional[SecretStr]) -> Optional[str]:
        """Secret from the resolver, else from settings."""
        if self.secret_resolver is not None:
            value = self.secret_resolver.get_secret(key)
            if value:
                return value
        if configured is not None:
            value = configured.get_secret_value()
            return value or None
        return None

    def secret_values(self) -> List[str]:
        """Every secret this provider holds, for message scrubbing."""
        return []

    def configuration_errors(self) -> List[str]:
        """Every configuration problem, not just the first."""
        errors: List[str] = []
        if not self.client_id.strip():
            errors.append(f"{self.name}: client_id is required")
        if not self.redirect_uri:
            errors.append(f"{self.name}: redirect_uri is required (or redirect_base_url)")
        elif has_dangerous_scheme(self.redirect_uri) or not self.redirect_uri.lower().startswith(("https://", "http://")):
            errors.append(f"{self.name}: redirect_uri must be an http(s) URL")
        scopes = self.settings.scopes
        if not scopes:
            errors.append(f"{self.name}: at least one scope is required")
        elif any(not isinstance(scope, str) or not scope.strip() for scope in scopes):
            errors.append(f"{self.name}: scopes must be non-empty strings")
        errors.extend(bounded_errors(self.name, "clock_skew_seconds",
                                     self.settings.clock_skew_seconds, 0, MAX_CLOCK_SKEW_SECONDS))
        errors.extend(bounded_errors(self.name, "state_ttl_seconds", self.settings.state_ttl_seconds, 30, 3600))
        errors.extend(self._provider_configuration_errors())
        return errors

    def _provider_configuration_errors(self) -> List[str]:
        return []

    def validate_configuration(self) -> bool:
        return not self.configuration_errors()

    # Authorization -------------------------------------------------------

    def create_authorization_request(self,
                                     return_url: Optional[str] = None,
                                     extra_params: Optional[Mapping[str, Any]] = None,
                                     policy: Optional[str] = None) -> AuthorizationRequest:
        """Build a fresh authorization request with its own state."""
        if policy is not None and not self.supports_policies:
            raise InvalidArgumentError(f"Provider '{self.name}' does not support policies")

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32) if self.requires_nonce else None
        code_verifier = code_challenge = None
        if self.settings.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()

        params: Dict[str, str] = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.format_scopes(self.authorization_scopes()),
            "state": state,
        }
        if nonce:
            params["nonce"] = nonce
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self.authorization_params())

        for name, value in sanitize_extra_params(extra_params).items():
            params.setdefault(name, value)

        endpoint, resolved_policy = self.authorization_endpoint(policy)
        separator = "&" if "?" in endpoint else "?"
        url = endpoint + separator + urlencode(params, quote_via=quote)

        now = self._clock()
        return AuthorizationRequest(
            provider=self.name,
            return_url=sanitize_return_url(return_url),
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            policy=resolved_policy,
            authorization_url=url,
            created_at=now,
            expires_at=now + self.settings.state_ttl_seconds,
        )

    def build_authorization_url(self,
                                return_url: Optional[str] = None,
                                extra_params: Optional[Mapping[str, Any]] = None) -> str:
        return self.create_authorization_request(return_url, extra_params).authorization_url

    def authorization_scopes(self) -> List[str]:
        return list(self.settings.scopes)

    def format_scopes(self, scopes: List[str]) -> str:
        return " ".join(scopes)

    @abstractmethod
    def authorization_endpoint(self, policy: Optional[str] = None) -> Tuple[str, Optional[str]]:
        """Endpoint URL and the policy it selects."""

    def authorization_params(self) -> Dict[str, str]:
        """Provider-specific authorization parameters."""
        return {}

    def build_logout_url(self, post_logout_redirect_uri: Optional[str] = None) -> Optional[str]:
        return None

    def build_password_reset_url(self) -> Optional[str]:
        return None

    # Token exchange and identity ----------------------------------------

    @abstractmethod
    async def exchange_code(self, code: str, state: Optional[str] = None, *,
                            code_verifier: Optional[str] = None,
                            policy: Optional[str] = None) -> TokenResponse:
        """Exchange an authorization code. Never retried."""

    @abstractmethod
    async def fetch_identity(self, tokens: TokenResponse, *, nonce: Optional[str] = None) -> UserInfo:
        """Resolve the canonical identity for a token response."""

    async def check_health(self) -> bool:
        if not self.validate_configuration():
            return False
        if self.jwks is not None:
            return await self.jwks.check_health()
        return True

    # Helpers -------------------------------------------------------------

    def _require_code(self, code: Optional[str]) -> str:
        if code is None or not isinstance(code, str) or not code.strip():
            raise InvalidArgumentError("Authorization code is required", {"provider": self.name})
        return code.strip()

    def _require_token(self, tokens: Optional[TokenResponse], attribute: str) -> str:
        if tokens is None:
            raise InvalidArgumentError("Token response is required", {"provider": self.name})
        value = getattr(tokens, attribute, None)
        if not value or not value.strip():
            raise InvalidArgumentError(f"Token response has no {attribute}", {"provider": self.name})
        return value.strip()

    def _upstream_error(self, response: TransportResponse) -> Optional[str]:
        error = response.payload.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            code = error.get("type") or error.get("code")
            return str(code) if code is not None else None
        return None

    def _check_response(self, response: TransportResponse, operation: str) -> Dict[str, Any]:
        """Payload of a successful response, or AuthenticationError."""
        if response.ok:
            return response.payload
        upstream = self._upstream_error(response)
        message = ensure_no_secrets(f"{self.name} {operation} was rejected", self.secret_values())
        self.logger.warning("Provider rejected request", operation=operation,
                            status_code=response.status_code, upstream_error=upstream)
        details: Dict[str, Any] = {"provider": self.name, "status_code": response.status_code}
        if upstream:
            details["error"] = ensure_no_secrets(upstream, self.secret_values())
        raise AuthenticationError(message, details)

    def _parse_token_response(self, payload: Mapping[str, Any]) -> TokenResponse:
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else 3600
        except (TypeError, ValueError):
            expires_in = 3600
        if expires_in <= 0:
            expires_in = 3600
        try:
            return TokenResponse(
                access_token=str(payload.get("access_token") or ""),
                id_token=payload.get("id_token") or None,
                refresh_token=payload.get("refresh_token") or None,
                token_type=str(payload.get("token_type") or "Bearer"),
                expires_in=expires_in,
                scope=payload.get("scope") if isinstance(payload.get("scope"), str) else None,
            )
        except ValidationError:
            raise AuthenticationError(f"{self.name} returned an unusable token response",
                                      {"provider": self.name}) from None

    async def _post_token_request(self, url: str, form: Dict[str, Any]) -> TokenResponse:
        response = await self.transport.post_form(self.name, url, form)
        payload = self._check_response(response, "token exchange")
        tokens = self._parse_token_response(payload)
        if not tokens.access_token and not tokens.id_token:
            raise AuthenticationError(f"{self.name} token response contained no tokens",
                                      {"provider": self.name})
        self.logger.info("Authorization code exchanged", expires_in=tokens.expires_in)
        return tokens

    async def _validate_id_token(self, id_token: str, issuer: str,
                                 nonce: Optional[str] = None) -> Dict[str, Any]:
        """Validate an ID token against this provider's keys and bind the nonce."""
        header = peek_header(id_token)
        keys: List[Dict[str, Any]] = []
        if header is not None and self.jwks is not None:
            kid = header.get("kid")
            keys = await self.jwks.get_signing_keys(kid if isinstance(kid, str) else None)
        outcome = self.validator.validate(
            id_token, issuer, self.client_id, keys, self.settings.clock_skew_seconds
        )
        claims = outcome.raise_for_failure()
        if nonce is not None:
            token_nonce = claims.get("nonce")
            if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce.encode(), nonce.encode()):
                self.logger.warning("ID token nonce mismatch")
                raise InvalidCallbackError("ID token nonce does not match the authorization request",
                                           {"provider": self.name})
        return claims
