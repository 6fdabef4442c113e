"""
Facebook Login provider with optional business and Instagram extensions.

Graph API calls carry the access token in the Authorization header plus an
``appsecret_proof`` (HMAC-SHA256 of the token keyed by the app secret).
"""

import hashlib
import hmac
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import AuthenticationError, AuthorizationError, ProviderUnavailableError
from shared.secrets_manager import SecretResolver
from service_identity.app.models import ProviderCapability, TokenResponse, UserInfo
from service_identity.app.providers.base import IdentityProvider, bounded_errors
from service_identity.app.settings import FacebookSettings
from service_identity.app.transport import HttpTransport
from service_identity.app.validation.claims import ClaimMapping, ClaimsNormalizer, stringify_claim
from service_identity.app.validation.token_validator import TokenValidator

ALLOWED_DISPLAY_MODES = frozenset({"page", "popup", "touch"})
ALLOWED_LOCALES = frozenset({
    "en_US", "en_GB", "es_ES", "es_LA", "fr_FR", "fr_CA", "de_DE", "it_IT", "pt_BR", "pt_PT",
    "nl_NL", "sv_SE", "da_DK", "nb_NO", "fi_FI", "pl_PL", "tr_TR", "ru_RU", "ja_JP", "ko_KR",
    "zh_CN", "zh_TW", "ar_AR", "he_IL", "hi_IN", "id_ID", "th_TH", "vi_VN",
})
MAX_PAGES_LIMIT = 100
_API_VERSION = re.compile(r"^v\d+\.\d+$")

FACEBOOK_CLAIMS = ClaimMapping(
    user_id=("id",),
    email=("email",),
    display_name=("name",),
    first_name=("first_name",),
    last_name=("last_name",),
    picture=("picture.data.url", "picture"),
)


class FacebookProvider(IdentityProvider):
    """Facebook Login over the Graph API."""

    name = "facebook"

    def __init__(self,
                 settings: FacebookSettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 validator: Optional[TokenValidator] = None,
                 redirect_base_url: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(settings, transport, secret_resolver, validator, redirect_base_url, clock)
        self.settings: FacebookSettings = settings
        self.app_secret = self.resolve_secret("facebook_app_secret", settings.client_secret)
        self.normalizer = ClaimsNormalizer(FACEBOOK_CLAIMS)

    @property
    def capabilities(self):
        capabilities = set(self.base_capabilities)
        if self.settings.business.enabled:
            capabilities.add(ProviderCapability.BUSINESS_ASSETS)
        return frozenset(capabilities)

    @property
    def graph_url(self) -> str:
        return f"{self.settings.graph_base_url.rstrip('/')}/{self.settings.api_version}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.graph_url}/oauth/access_token"

    def secret_values(self) -> List[str]:
        return [self.app_secret] if self.app_secret else []

    def _provider_configuration_errors(self) -> List[str]:
        settings = self.settings
        errors = []
        if not self.app_secret:
            errors.append("facebook: app secret is required")
        if not _API_VERSION.match(settings.api_version or ""):
            errors.append("facebook: api_version must look like v19.0")
        if settings.display_mode not in ALLOWED_DISPLAY_MODES:
            errors.append(f"facebook: display_mode must be one of {sorted(ALLOWED_DISPLAY_MODES)}")
        if settings.locale not in ALLOWED_LOCALES:
            errors.append("facebook: locale is not a supported locale")
        if not settings.profile_fields or "id" not in settings.profile_fields:
            errors.append("facebook: profile_fields must include id")
        business = settings.business
        errors.extend(bounded_errors("facebook", "business.max_pages_limit",
                                     business.max_pages_limit, 1, MAX_PAGES_LIMIT))
        if business.enabled:
            if any(not isinstance(scope, str) or not scope.strip() for scope in business.scopes):
                errors.append("facebook: business scopes must be non-empty strings")
            if business.validate_business_permissions and not (business.required_business_role or "").strip():
                errors.append("facebook: required_business_role is required when validating business permissions")
        if settings.instagram.enabled and (
                not settings.instagram.scopes
                or any(not isinstance(scope, str) or not scope.strip() for scope in settings.instagram.scopes)):
            errors.append("facebook: instagram scopes must be non-empty strings")
        return errors

    # Authorization -------------------------------------------------------

    def authorization_endpoint(self, policy: Optional[str] = None) -> Tuple[str, Optional[str]]:
        base = self.settings.dialog_base_url.rstrip("/")
        return f"{base}/{self.settings.api_version}/dialog/oauth", None

    def authorization_scopes(self) -> List[str]:
        scopes = list(self.settings.scopes)
        if self.settings.business.enabled:
            scopes.extend(self.settings.business.scopes)
        if self.settings.instagram.enabled:
            scopes.extend(self.settings.instagram.scopes)
        return list(dict.fromkeys(scopes))

    def format_scopes(self, scopes: List[str]) -> str:
        return ",".join(scopes)

    def authorization_params(self) -> Dict[str, str]:
        params = {"display": self.settings.display_mode, "locale": self.settings.locale}
        business = self.settings.business
        if business.enabled:
            params["auth_type"] = "rerequest"
            if business.business_id:
                params["business_id"] = business.business_id
        return params

    # Token exchange ------------------------------------------------------

    async def exchange_code(self, code: str, state: Optional[str] = None, *,
                            code_verifier: Optional[str] = None,
                            policy: Optional[str] = None) -> TokenResponse:
        code = self._require_code(code)
        form = {
            "client_id": self.client_id,
            "client_secret": self.app_secret or "",
            "redirect_uri": self.redirect_uri,
            "code": code,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        tokens = await self._post_token_request(self.token_endpoint, form)
        if self.settings.use_long_lived_tokens:
            tokens = await self._exchange_long_lived(tokens)
        return tokens

    async def _exchange_long_lived(self, tokens: TokenResponse) -> TokenResponse:
        """Swap a short-lived token for a long-lived one.

        The short-lived token is kept when the upgrade fails, and the
        resulting expiry never drops below the short-lived one.
        """
        form = {
            "grant_type": "fb_exchange_token",
            "client_id": self.client_id,
            "client_secret": self.app_secret or "",
            "fb_exchange_token": tokens.access_token,
        }
        try:
            long_lived = await self._post_token_request(self.token_endpoint, form)
        except (AuthenticationError, ProviderUnavailableError) as e:
            self.logger.warning("Long-lived token exchange failed, keeping short-lived token", error=e.code)
            return tokens
        if not long_lived.access_token:
            return tokens
        return tokens.model_copy(update={
            "access_token": long_lived.access_token,
            "expires_in": max(tokens.expires_in, long_lived.expires_in),
        })

    # Identity ------------------------------------------------------------

    def _appsecret_proof(self, access_token: str) -> str:
        return hmac.new(
            (self.app_secret or "").encode("utf-8"),
            access_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _graph_get(self, path: str, access_token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        query = dict(params)
        query["appsecret_proof"] = self._appsecret_proof(access_token)
        response = await self.transport.get(
            self.name,
            f"{self.graph_url}/{path.lstrip('/')}",
            params=query,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return self._check_response(response, f"graph request {path}")

    def _page(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = payload.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)][:self.settings.business.max_pages_limit]

    async def fetch_identity(self, tokens: TokenResponse, *, nonce: Optional[str] = None) -> UserInfo:
        access_token = self._require_token(tokens, "access_token")

        profile = await self._graph_get("me", access_token, {"fields": ",".join(self.settings.profile_fields)})
        extra: Dict[str, Any] = {}
        if self.settings.business.enabled:
            extra.update(await self._business_claims(access_token))
        if self.settings.instagram.enabled:
            extra.update(await self._instagram_claims(access_token))

        user = self.normalizer.normalize(self.name, profile, extra_claims=extra)
        self.logger.info("Identity resolved", user_id=user.user_id,
                         business=bool(extra.get("business_id")))
        return user

    async def _business_claims(self, access_token: str) -> Dict[str, Any]:
        business_settings = self.settings.business
        payload = await self._graph_get(
            "me/businesses", access_token,
            {"fields": "id,name,verification_status,permitted_roles",
             "limit": business_settings.max_pages_limit},
        )
        businesses = self._page(payload)
        if business_settings.business_id:
            businesses = [b for b in businesses if str(b.get("id")) == business_settings.business_id]
        business = businesses[0] if businesses else None

        roles: List[str] = []
        if business is not None:
            raw_roles = business.get("permitted_roles") or []
            roles = [str(role) for role in raw_roles] if isinstance(raw_roles, list) else [str(raw_roles)]

        if business_settings.validate_business_permissions:
            self._check_business_role(business, roles)

        claims: Dict[str, Any] = {}
        if business is not None:
            claims["business_id"] = stringify_claim(business.get("id"))
            claims["business_name"] = stringify_claim(business.get("name"))
            if business.get("verification_status") is not None:
                claims["business_verification_status"] = stringify_claim(business["verification_status"])
            if business_settings.include_business_roles:
                claims["business_roles"] = ",".join(roles)

        if business_settings.include_business_assets:
            claims.update(await self._business_assets(access_token))
        return claims

    def _check_business_role(self, business: Optional[Dict[str, Any]], roles: List[str]) -> None:
        # TODO: role hierarchy (e.g. ADMIN implying EMPLOYEE) pending product decision
        required = (self.settings.business.required_business_role or "").strip().casefold()
        if business is None or required not in {role.strip().casefold() for role in roles}:
            self.logger.warning("Business role check failed",
                                required_role=self.settings.business.required_business_role)
            raise AuthorizationError(
                "Authenticated user lacks the required business role",
                {"provider": self.name, "required_role": self.settings.business.required_business_role},
            )

    async def _business_assets(self, access_token: str) -> Dict[str, Any]:
        limit = self.settings.business.max_pages_limit
        pages = self._page(await self._graph_get(
            "me/accounts", access_token, {"fields": "id,name,category", "limit": limit},
        ))
        accounts = self._page(await self._graph_get(
            "me/adaccounts", access_token, {"fields": "id,name,account_status", "limit": limit},
        ))
        claims: Dict[str, Any] = {
            "business_pages": [{"id": p.get("id"), "name": p.get("name"), "category": p.get("category")}
                               for p in pages],
            "business_pages_count": len(pages),
            "business_accounts": [{"id": a.get("id"), "name": a.get("name")} for a in accounts],
        }
        if accounts:
            claims["business_account_id"] = stringify_claim(accounts[0].get("id"))
            claims["business_account_name"] = stringify_claim(accounts[0].get("name"))
        return claims

    async def _instagram_claims(self, access_token: str) -> Dict[str, Any]:
        pages = self._page(await self._graph_get(
            "me/accounts", access_token,
            {"fields": "instagram_business_account{id,username}", "limit": self.settings.business.max_pages_limit},
        ))
        accounts = []
        for page in pages:
            account = page.get("instagram_business_account")
            if isinstance(account, dict) and account.get("id"):
                accounts.append({"id": account.get("id"), "username": account.get("username")})
        return {"instagram_accounts": accounts}
