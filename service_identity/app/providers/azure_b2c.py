"""
Azure AD B2C provider.

B2C user flows are selected by policy (sign-up/sign-in, password reset,
profile edit) through the ``p`` query parameter. Claims come from the
validated ID token; ``extension_*`` custom attributes pass through as-is.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from shared.errors import AuthenticationError, InvalidArgumentError
from shared.secrets_manager import SecretResolver
from service_identity.app.jwks.client import JWKSClient
from service_identity.app.models import ProviderCapability, TokenResponse, UserInfo
from service_identity.app.providers.assertions import (
    JWT_BEARER_ASSERTION_TYPE,
    key_errors,
    mint_client_assertion,
)
from service_identity.app.providers.base import IdentityProvider, bounded_errors
from service_identity.app.settings import AzureB2CSettings
from service_identity.app.transport import HttpTransport
from service_identity.app.validation.claims import ClaimMapping, ClaimsNormalizer
from service_identity.app.validation.token_validator import TokenValidator

B2C_CLAIMS = ClaimMapping(
    user_id=("oid", "sub"),
    email=("email", "emails"),
    display_name=("name",),
    first_name=("given_name",),
    last_name=("family_name",),
    picture=("picture",),
)


class PolicyKind(str, Enum):
    SIGN_UP_SIGN_IN = "sign_up_sign_in"
    PASSWORD_RESET = "password_reset"
    PROFILE_EDIT = "profile_edit"


class AzureB2CProvider(IdentityProvider):
    """Azure AD B2C user flows over OpenID Connect."""

    name = "azureb2c"
    requires_nonce = True
    supports_policies = True
    base_capabilities = frozenset({ProviderCapability.LOGOUT, ProviderCapability.REFRESH_TOKENS})

    def __init__(self,
                 settings: AzureB2CSettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 validator: Optional[TokenValidator] = None,
                 redirect_base_url: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(settings, transport, secret_resolver, validator, redirect_base_url, clock)
        self.settings: AzureB2CSettings = settings
        self.client_secret = self.resolve_secret("azure_b2c_client_secret", settings.client_secret)
        self.assertion_key = self.resolve_secret("azure_b2c_assertion_private_key",
                                                 settings.assertion_private_key)
        self.jwks = JWKSClient(
            self.name,
            f"{self.authority}/discovery/v2.0/keys?p={quote(settings.sign_up_sign_in_policy)}",
            transport,
            cache_ttl=settings.jwks_cache_seconds,
        )
        self.normalizer = ClaimsNormalizer(B2C_CLAIMS)

    @property
    def capabilities(self):
        capabilities = set(self.base_capabilities)
        if self.settings.reset_password_policy:
            capabilities.add(ProviderCapability.PASSWORD_RESET)
        if self.settings.edit_profile_policy:
            capabilities.add(ProviderCapability.PROFILE_EDIT)
        return frozenset(capabilities)

    @property
    def authority(self) -> str:
        settings = self.settings
        host = settings.custom_domain or f"{settings.tenant_name}.b2clogin.com"
        return f"https://{host.strip('/')}/{settings.tenant_id}"

    @property
    def issuer(self) -> str:
        if self.settings.issuer:
            return self.settings.issuer
        return f"{self.authority}/v2.0/"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    def secret_values(self) -> List[str]:
        return [value for value in (self.client_secret, self.assertion_key) if value]

    def resolve_policy(self, policy: Optional[str]) -> str:
        """Map a PolicyKind (or a literal policy id) to the configured policy id."""
        settings = self.settings
        if isinstance(policy, PolicyKind):
            policy = policy.value
        if policy is None or policy == PolicyKind.SIGN_UP_SIGN_IN.value:
            return settings.sign_up_sign_in_policy
        by_kind = {
            PolicyKind.PASSWORD_RESET.value: settings.reset_password_policy,
            PolicyKind.PROFILE_EDIT.value: settings.edit_profile_policy,
        }
        if policy in by_kind:
            resolved = by_kind[policy]
            if not resolved:
                raise InvalidArgumentError(f"Policy '{policy}' is not configured", {"provider": self.name})
            return resolved
        configured = {settings.sign_up_sign_in_policy, settings.reset_password_policy, settings.edit_profile_policy}
        if policy in configured:
            return policy
        raise InvalidArgumentError("Unknown policy", {"provider": self.name})

    def _provider_configuration_errors(self) -> List[str]:
        settings = self.settings
        errors = []
        if not settings.tenant_id.strip():
            errors.append("azureb2c: tenant_id is required")
        if not settings.custom_domain and not settings.tenant_name.strip():
            errors.append("azureb2c: tenant_name is required unless custom_domain is set")
        if not settings.sign_up_sign_in_policy.strip():
            errors.append("azureb2c: sign_up_sign_in_policy is required")
        if settings.use_client_assertion:
            if not self.assertion_key:
                errors.append("azureb2c: assertion private key is required for client assertions")
            else:
                errors.extend(key_errors("azureb2c", self.assertion_key, "RSA"))
            errors.extend(bounded_errors("azureb2c", "assertion_lifetime_seconds",
                                         settings.assertion_lifetime_seconds, 30, 3600))
        elif not self.client_secret:
            errors.append("azureb2c: client_secret is required unless client assertions are used")
        return errors

    def authorization_endpoint(self, policy: Optional[str] = None) -> Tuple[str, Optional[str]]:
        resolved = self.resolve_policy(policy)
        return f"{self.authority}/oauth2/v2.0/authorize?p={quote(resolved)}", resolved

    def build_logout_url(self, post_logout_redirect_uri: Optional[str] = None) -> Optional[str]:
        params = {"p": self.settings.sign_up_sign_in_policy}
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
        return f"{self.authority}/oauth2/v2.0/logout?" + urlencode(params, quote_via=quote)

    def _client_credentials(self) -> Dict[str, str]:
        if self.settings.use_client_assertion:
            if not self.assertion_key:
                raise AuthenticationError("azureb2c client assertion cannot be minted without a signing key",
                                          {"provider": self.name})
            assertion = mint_client_assertion(
                client_id=self.client_id,
                audience=self.token_endpoint,
                private_key_pem=self.assertion_key,
                key_id=self.settings.assertion_key_id,
                lifetime_seconds=self.settings.assertion_lifetime_seconds,
                clock=self._clock,
            )
            return {"client_assertion_type": JWT_BEARER_ASSERTION_TYPE, "client_assertion": assertion}
        return {"client_secret": self.client_secret or ""}

    async def exchange_code(self, code: str, state: Optional[str] = None, *,
                            code_verifier: Optional[str] = None,
                            policy: Optional[str] = None) -> TokenResponse:
        code = self._require_code(code)
        resolved = self.resolve_policy(policy)
        form: Dict[str, Any] = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.settings.scopes),
        }
        form.update(self._client_credentials())
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._post_token_request(f"{self.token_endpoint}?p={quote(resolved)}", form)

    async def fetch_identity(self, tokens: TokenResponse, *, nonce: Optional[str] = None) -> UserInfo:
        id_token = self._require_token(tokens, "id_token")
        claims = await self._validate_id_token(id_token, self.issuer, nonce)

        tenant = claims.get("tid") or claims.get("tenant") or self.settings.tenant_id
        user = self.normalizer.normalize(self.name, claims, extra_claims={"tenant_id": tenant})
        self.logger.info("Identity resolved", user_id=user.user_id,
                         policy=claims.get("tfp") or claims.get("acr"))
        return user
