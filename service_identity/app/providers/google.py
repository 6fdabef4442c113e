"""
Google OpenID Connect provider.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import AuthenticationError, AuthorizationError, InvalidCallbackError
from shared.secrets_manager import SecretResolver
from service_identity.app.jwks.client import JWKSClient
from service_identity.app.models import ProviderCapability, TokenResponse, UserInfo
from service_identity.app.providers.base import IdentityProvider
from service_identity.app.settings import GoogleSettings
from service_identity.app.transport import HttpTransport
from service_identity.app.validation.claims import ClaimsNormalizer
from service_identity.app.validation.token_validator import TokenValidator

ALLOWED_PROMPTS = frozenset({"none", "consent", "select_account"})
ALLOWED_ACCESS_TYPES = frozenset({"online", "offline"})


class GoogleProvider(IdentityProvider):
    """Google sign-in with PKCE, nonce-bound ID tokens and user-info."""

    name = "google"
    base_capabilities = frozenset({
        ProviderCapability.PASSWORD_RESET,
        ProviderCapability.REFRESH_TOKENS,
    })

    def __init__(self,
                 settings: GoogleSettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 validator: Optional[TokenValidator] = None,
                 redirect_base_url: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(settings, transport, secret_resolver, validator, redirect_base_url, clock)
        self.settings: GoogleSettings = settings
        self.client_secret = self.resolve_secret("google_client_secret", settings.client_secret)
        self.jwks = JWKSClient(self.name, settings.jwks_uri, transport, cache_ttl=settings.jwks_cache_seconds)
        self.normalizer = ClaimsNormalizer()

    @property
    def requires_nonce(self) -> bool:
        return "openid" in self.settings.scopes

    def secret_values(self) -> List[str]:
        return [self.client_secret] if self.client_secret else []

    def _provider_configuration_errors(self) -> List[str]:
        errors = []
        if not self.client_secret:
            errors.append("google: client_secret is required")
        if self.settings.prompt is not None and self.settings.prompt not in ALLOWED_PROMPTS:
            errors.append(f"google: prompt must be one of {sorted(ALLOWED_PROMPTS)}")
        if self.settings.access_type not in ALLOWED_ACCESS_TYPES:
            errors.append(f"google: access_type must be one of {sorted(ALLOWED_ACCESS_TYPES)}")
        return errors

    def authorization_endpoint(self, policy: Optional[str] = None) -> Tuple[str, Optional[str]]:
        return self.settings.authorization_endpoint, None

    def authorization_params(self) -> Dict[str, str]:
        params = {"access_type": self.settings.access_type}
        if self.settings.prompt:
            params["prompt"] = self.settings.prompt
        if self.settings.hosted_domain:
            params["hd"] = self.settings.hosted_domain
        if self.settings.include_granted_scopes:
            params["include_granted_scopes"] = "true"
        return params

    def build_password_reset_url(self) -> Optional[str]:
        return self.settings.password_reset_url

    async def exchange_code(self, code: str, state: Optional[str] = None, *,
                            code_verifier: Optional[str] = None,
                            policy: Optional[str] = None) -> TokenResponse:
        code = self._require_code(code)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret or "",
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._post_token_request(self.settings.token_endpoint, form)

    async def fetch_identity(self, tokens: TokenResponse, *, nonce: Optional[str] = None) -> UserInfo:
        access_token = self._require_token(tokens, "access_token")

        claims: Dict[str, Any] = {}
        if tokens.id_token:
            claims.update(await self._validate_id_token(tokens.id_token, self.settings.issuer, nonce))
        elif nonce is not None:
            raise InvalidCallbackError("ID token required for a nonce-bound request", {"provider": self.name})

        response = await self.transport.get(
            self.name,
            self.settings.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        userinfo = self._check_response(response, "user-info request")

        if claims.get("sub") and userinfo.get("sub") and str(userinfo["sub"]) != str(claims["sub"]):
            raise AuthenticationError("Google user-info subject does not match the ID token",
                                      {"provider": self.name})
        for name, value in userinfo.items():
            claims.setdefault(name, value)

        hosted_domain = self.settings.hosted_domain
        if hosted_domain and str(claims.get("hd", "")).lower() != hosted_domain.lower():
            self.logger.warning("Hosted domain mismatch", expected=hosted_domain)
            raise AuthorizationError("Account is not a member of the required Google Workspace domain",
                                     {"provider": self.name})

        user = self.normalizer.normalize(self.name, claims)
        self.logger.info("Identity resolved", user_id=user.user_id)
        return user
