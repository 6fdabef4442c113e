"""
Unit tests for the Facebook provider.
"""

import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlsplit

import pytest

from shared.errors import AuthenticationError, AuthorizationError, InvalidArgumentError, ProviderUnavailableError
from shared.test_helpers import SampleDataFactory
from service_identity.app.models import ProviderCapability, TokenResponse
from service_identity.app.providers.facebook import FacebookProvider

from conftest import FACEBOOK_APP_ID, FACEBOOK_APP_SECRET, REDIRECT_BASE

GRAPH = "https://graph.facebook.com/v19.0"
TOKEN_URL = f"{GRAPH}/oauth/access_token"


def query(url):
    return {name: values[0] for name, values in parse_qs(urlsplit(url).query).items()}


def accounts_route(pages_payload, instagram_payload):
    """me/accounts answers both the assets and the Instagram lookup."""
    def respond(call):
        if call["params"]["fields"].startswith("instagram_business_account"):
            return 200, instagram_payload
        return 200, pages_payload
    return respond


class TestFacebookProvider:
    """Test cases for FacebookProvider."""

    @pytest.fixture
    def provider(self, facebook_settings, transport, clock):
        return FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE, clock=clock)

    @pytest.fixture
    def business_provider(self, facebook_settings, transport, clock):
        settings = facebook_settings.model_copy(deep=True)
        settings.business.enabled = True
        settings.business.include_business_roles = True
        return FacebookProvider(settings, transport, redirect_base_url=REDIRECT_BASE, clock=clock)

    @pytest.fixture
    def sample_user(self):
        return SampleDataFactory.create_sample_users()[0]

    # Authorization -------------------------------------------------------

    def test_authorization_url(self, provider):
        request = provider.create_authorization_request("/home")
        params = query(request.authorization_url)

        # Assertions
        assert request.authorization_url.startswith("https://www.facebook.com/v19.0/dialog/oauth?")
        assert params["client_id"] == FACEBOOK_APP_ID
        assert params["redirect_uri"] == "https://app.example.com/signin-facebook"
        assert params["scope"] == "email,public_profile"
        assert params["display"] == "page"
        assert params["locale"] == "en_US"
        assert "nonce" not in params
        assert "code_challenge" not in params
        assert FACEBOOK_APP_SECRET not in request.authorization_url

    def test_business_scopes_are_added_once(self, facebook_settings, transport):
        facebook_settings.scopes = ["email", "business_management"]
        facebook_settings.business.enabled = True
        facebook_settings.business.business_id = "biz-1"
        facebook_settings.instagram.enabled = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)

        params = query(provider.build_authorization_url())

        assert params["scope"] == "email,business_management,pages_show_list,instagram_basic"
        assert params["auth_type"] == "rerequest"
        assert params["business_id"] == "biz-1"

    def test_capabilities(self, provider, business_provider):
        assert ProviderCapability.BUSINESS_ASSETS not in provider.capabilities
        assert ProviderCapability.BUSINESS_ASSETS in business_provider.capabilities

    # Token exchange ------------------------------------------------------

    @pytest.mark.asyncio
    async def test_exchange_requires_code(self, provider, transport):
        with pytest.raises(InvalidArgumentError):
            await provider.exchange_code("")

        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_exchange_code(self, provider, transport):
        transport.add("POST", TOKEN_URL, (200, SampleDataFactory.token_payload(expires_in=5400)))

        tokens = await provider.exchange_code("fb-code")

        assert tokens.access_token == "access-token-value"
        assert tokens.expires_in == 5400
        assert transport.calls[0]["data"]["client_secret"] == FACEBOOK_APP_SECRET
        assert len(transport.calls_to(TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_long_lived_exchange(self, facebook_settings, transport):
        facebook_settings.use_long_lived_tokens = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)
        transport.add(
            "POST", TOKEN_URL,
            (200, SampleDataFactory.token_payload(access_token="short", expires_in=7200)),
            (200, SampleDataFactory.token_payload(access_token="long", expires_in=5184000)),
        )

        tokens = await provider.exchange_code("fb-code")

        assert tokens.access_token == "long"
        assert tokens.expires_in == 5184000
        assert transport.calls[1]["data"]["grant_type"] == "fb_exchange_token"
        assert transport.calls[1]["data"]["fb_exchange_token"] == "short"

    @pytest.mark.asyncio
    async def test_long_lived_expiry_never_shrinks(self, facebook_settings, transport):
        facebook_settings.use_long_lived_tokens = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)
        transport.add(
            "POST", TOKEN_URL,
            (200, SampleDataFactory.token_payload(access_token="short", expires_in=7200)),
            (200, SampleDataFactory.token_payload(access_token="long", expires_in=60)),
        )

        tokens = await provider.exchange_code("fb-code")

        assert tokens.access_token == "long"
        assert tokens.expires_in == 7200

    @pytest.mark.asyncio
    async def test_long_lived_failure_keeps_short_token(self, facebook_settings, transport):
        facebook_settings.use_long_lived_tokens = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)
        transport.add(
            "POST", TOKEN_URL,
            (200, SampleDataFactory.token_payload(access_token="short", expires_in=7200)),
            ProviderUnavailableError("facebook", "HTTP 503"),
        )

        tokens = await provider.exchange_code("fb-code")

        assert tokens.access_token == "short"
        assert tokens.expires_in == 7200

    @pytest.mark.asyncio
    async def test_exchange_error_is_scrubbed(self, provider, transport):
        transport.add("POST", TOKEN_URL, (400, {"error": {"type": "OAuthException",
                                                          "message": f"bad secret {FACEBOOK_APP_SECRET}"}}))

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.exchange_code("fb-code")

        assert exc_info.value.details["error"] == "OAuthException"
        assert FACEBOOK_APP_SECRET not in str(exc_info.value)

    # Identity ------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_fetch_identity(self, provider, transport, sample_user):
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))

        user = await provider.fetch_identity(TokenResponse(access_token="fb-token"))

        call = transport.calls_to(f"{GRAPH}/me")[0]
        expected_proof = hmac.new(FACEBOOK_APP_SECRET.encode(), b"fb-token", hashlib.sha256).hexdigest()
        # Assertions
        assert call["params"]["appsecret_proof"] == expected_proof
        assert call["headers"]["Authorization"] == "Bearer fb-token"
        assert "id" in call["params"]["fields"].split(",")
        assert "fb-token" not in call["params"].values()
        assert user.user_id == sample_user.user_id
        assert user.email == sample_user.email
        assert user.display_name == sample_user.display_name
        assert user.profile_picture_url == "https://graph.facebook.com/photo.jpg"
        assert user.auth_provider == "facebook"
        assert user.claims["timezone"] == "-5"
        assert json.loads(user.claims["picture"])["data"]["is_silhouette"] is False

    @pytest.mark.asyncio
    async def test_fetch_identity_requires_access_token(self, provider):
        with pytest.raises(InvalidArgumentError):
            await provider.fetch_identity(TokenResponse(access_token="", id_token="x"))

    @pytest.mark.asyncio
    async def test_business_claims(self, business_provider, transport, sample_user):
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/businesses", (200, {"data": [
            {"id": "biz-1", "name": "Acme", "verification_status": "verified", "permitted_roles": ["ADMIN"]},
        ]}))

        user = await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))

        assert user.claims["business_id"] == "biz-1"
        assert user.claims["business_name"] == "Acme"
        assert user.claims["business_verification_status"] == "verified"
        assert user.claims["business_roles"] == "ADMIN"

    @pytest.mark.asyncio
    async def test_configured_business_is_selected(self, business_provider, transport, sample_user):
        business_provider.settings.business.business_id = "biz-2"
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/businesses", (200, {"data": [
            {"id": "biz-1", "name": "Acme"},
            {"id": "biz-2", "name": "Globex"},
        ]}))

        user = await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))

        assert user.claims["business_id"] == "biz-2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("roles, allowed", [
        (["ADMIN"], True),
        (["admin"], True),
        (["EMPLOYEE", "Admin "], True),
        (["EDITOR"], False),
        ([], False),
    ])
    async def test_business_role_enforcement(self, business_provider, transport, sample_user, roles, allowed):
        business = business_provider.settings.business
        business.validate_business_permissions = True
        business.required_business_role = "Admin"
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/businesses",
                      (200, {"data": [{"id": "biz-1", "name": "Acme", "permitted_roles": roles}]}))

        if allowed:
            user = await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))
            assert user.claims["business_id"] == "biz-1"
        else:
            with pytest.raises(AuthorizationError) as exc_info:
                await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))
            assert exc_info.value.http_status == 403

    @pytest.mark.asyncio
    async def test_role_required_without_business(self, business_provider, transport, sample_user):
        business = business_provider.settings.business
        business.validate_business_permissions = True
        business.required_business_role = "ADMIN"
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/businesses", (200, {"data": []}))

        with pytest.raises(AuthorizationError):
            await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))

    @pytest.mark.asyncio
    async def test_business_assets_are_limited(self, business_provider, transport, sample_user):
        business = business_provider.settings.business
        business.include_business_assets = True
        business.max_pages_limit = 2
        pages = {"data": [{"id": f"page-{i}", "name": f"Page {i}", "category": "Brand"} for i in range(5)]}
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/businesses", (200, {"data": [{"id": "biz-1", "name": "Acme"}]}))
        transport.add("GET", f"{GRAPH}/me/accounts", (200, pages))
        transport.add("GET", f"{GRAPH}/me/adaccounts", (200, {"data": [{"id": "act_1", "name": "Main"}]}))

        user = await business_provider.fetch_identity(TokenResponse(access_token="fb-token"))

        assert user.claims["business_pages_count"] == "2"
        assert [page["id"] for page in json.loads(user.claims["business_pages"])] == ["page-0", "page-1"]
        assert user.claims["business_account_id"] == "act_1"
        assert transport.calls_to(f"{GRAPH}/me/accounts")[0]["params"]["limit"] == 2

    @pytest.mark.asyncio
    async def test_instagram_accounts(self, facebook_settings, transport, sample_user):
        facebook_settings.instagram.enabled = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)
        instagram = {"data": [
            {"id": "page-1", "instagram_business_account": {"id": "ig-1", "username": "acme"}},
            {"id": "page-2"},
        ]}
        transport.add("GET", f"{GRAPH}/me", (200, SampleDataFactory.facebook_me(sample_user)))
        transport.add("GET", f"{GRAPH}/me/accounts", accounts_route({"data": []}, instagram))

        user = await provider.fetch_identity(TokenResponse(access_token="fb-token"))

        assert json.loads(user.claims["instagram_accounts"]) == [{"id": "ig-1", "username": "acme"}]

    @pytest.mark.asyncio
    async def test_graph_rejection(self, provider, transport):
        transport.add("GET", f"{GRAPH}/me", (401, {"error": {"code": 190, "type": "OAuthException"}}))

        with pytest.raises(AuthenticationError):
            await provider.fetch_identity(TokenResponse(access_token="expired"))

    # Configuration -------------------------------------------------------

    def test_valid_configuration(self, provider):
        assert provider.configuration_errors() == []

    @pytest.mark.parametrize("field, value", [
        ("display_mode", "fullscreen"),
        ("locale", "xx_XX"),
        ("api_version", "19"),
        ("profile_fields", ["email", "name"]),
    ])
    def test_invalid_settings(self, facebook_settings, transport, field, value):
        setattr(facebook_settings, field, value)
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)

        assert len(provider.configuration_errors()) == 1

    @pytest.mark.parametrize("limit, valid", [(1, True), (100, True), (0, False), (101, False)])
    def test_max_pages_limit(self, facebook_settings, transport, limit, valid):
        facebook_settings.business.max_pages_limit = limit
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)

        assert provider.validate_configuration() is valid

    def test_role_validation_needs_role(self, facebook_settings, transport):
        facebook_settings.business.enabled = True
        facebook_settings.business.validate_business_permissions = True
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)

        assert any("required_business_role" in error for error in provider.configuration_errors())

    def test_missing_app_secret(self, facebook_settings, transport):
        facebook_settings.client_secret = None
        provider = FacebookProvider(facebook_settings, transport, redirect_base_url=REDIRECT_BASE)

        assert "facebook: app secret is required" in provider.configuration_errors()
