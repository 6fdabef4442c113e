"""
Sign in with Apple provider.

Identity comes from the validated ID token only; Apple has no user-info
endpoint. The email may be a private relay address.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import AuthenticationError
from shared.secrets_manager import SecretResolver
from service_identity.app.jwks.client import JWKSClient
from service_identity.app.models import ProviderCapability, TokenResponse, UserInfo
from service_identity.app.providers.assertions import key_errors, mint_apple_client_secret
from service_identity.app.providers.base import IdentityProvider, bounded_errors
from service_identity.app.settings import AppleSettings
from service_identity.app.transport import HttpTransport
from service_identity.app.validation.claims import ClaimsNormalizer, first_claim
from service_identity.app.validation.token_validator import TokenValidator

PRIVATE_RELAY_DOMAIN_PREFIX = "privaterelay."
PRIVATE_MARKER = " (Private)"
ALLOWED_RESPONSE_MODES = frozenset({"form_post", "query", "fragment"})


def is_private_relay(email: str, claims: Dict[str, Any]) -> bool:
    flag = claims.get("is_private_email")
    if flag is True or (isinstance(flag, str) and flag.lower() == "true"):
        return True
    if "@" not in email:
        return False
    return email.rsplit("@", 1)[1].lower().startswith(PRIVATE_RELAY_DOMAIN_PREFIX)


class AppleProvider(IdentityProvider):
    """Sign in with Apple."""

    name = "apple"
    requires_nonce = True
    base_capabilities = frozenset({ProviderCapability.REFRESH_TOKENS})

    def __init__(self,
                 settings: AppleSettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 validator: Optional[TokenValidator] = None,
                 redirect_base_url: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(settings, transport, secret_resolver, validator, redirect_base_url, clock)
        self.settings: AppleSettings = settings
        self.private_key = self.resolve_secret("apple_private_key", settings.private_key)
        self.jwks = JWKSClient(self.name, settings.jwks_uri, transport, cache_ttl=settings.jwks_cache_seconds)
        self.normalizer = ClaimsNormalizer()

    def secret_values(self) -> List[str]:
        return [self.private_key] if self.private_key else []

    def _provider_configuration_errors(self) -> List[str]:
        settings = self.settings
        errors = []
        if not settings.team_id.strip():
            errors.append("apple: team_id is required")
        if not settings.key_id.strip():
            errors.append("apple: key_id is required")
        if not self.private_key:
            errors.append("apple: private key is required")
        else:
            errors.extend(key_errors("apple", self.private_key, "EC"))
        if settings.response_mode not in ALLOWED_RESPONSE_MODES:
            errors.append(f"apple: response_mode must be one of {sorted(ALLOWED_RESPONSE_MODES)}")
        elif settings.scopes and settings.response_mode != "form_post":
            errors.append("apple: response_mode must be form_post when scopes are requested")
        errors.extend(bounded_errors("apple", "assertion_lifetime_seconds",
                                     settings.assertion_lifetime_seconds, 30, 3600))
        return errors

    def authorization_endpoint(self, policy: Optional[str] = None) -> Tuple[str, Optional[str]]:
        return self.settings.authorization_endpoint, None

    def authorization_params(self) -> Dict[str, str]:
        return {"response_mode": self.settings.response_mode}

    def mint_client_secret(self) -> str:
        """A fresh ES256 client secret, valid for this exchange only."""
        return mint_apple_client_secret(
            team_id=self.settings.team_id,
            client_id=self.client_id,
            key_id=self.settings.key_id,
            private_key_pem=self.private_key or "",
            lifetime_seconds=self.settings.assertion_lifetime_seconds,
            clock=self._clock,
        )

    async def exchange_code(self, code: str, state: Optional[str] = None, *,
                            code_verifier: Optional[str] = None,
                            policy: Optional[str] = None) -> TokenResponse:
        code = self._require_code(code)
        if not self.private_key:
            raise AuthenticationError("apple client secret cannot be minted without a signing key",
                                      {"provider": self.name})
        form = {
            "client_id": self.client_id,
            "client_secret": self.mint_client_secret(),
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._post_token_request(self.settings.token_endpoint, form)

    async def fetch_identity(self, tokens: TokenResponse, *, nonce: Optional[str] = None) -> UserInfo:
        id_token = self._require_token(tokens, "id_token")
        claims = await self._validate_id_token(id_token, self.settings.issuer, nonce)

        email = first_claim(claims, ("email",))
        relay_settings = self.settings.private_email
        if not relay_settings.handle_private_relay or not is_private_relay(email, claims):
            return self.normalizer.normalize(self.name, claims)

        if relay_settings.log_relay_detection:
            self.logger.info("Private relay email detected", user_id=claims.get("sub"))
        base_name = email.split("@", 1)[0] if email else "Apple User"
        user = self.normalizer.normalize(
            self.name,
            claims,
            extra_claims={"is_private_relay": True},
            email=email if relay_settings.store_relay_emails else "",
            display_name=f"{base_name}{PRIVATE_MARKER}",
        )
        self.logger.info("Identity resolved", user_id=user.user_id, private_relay=True)
        return user
