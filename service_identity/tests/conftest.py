"""
Shared fixtures for identity tests.
"""

import inspect
from typing import Any, Dict, List, Optional

import pytest
from prometheus_client import CollectorRegistry

from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, generate_ec_key, generate_rsa_key
from service_identity.app.settings import (
    AppleSettings,
    AzureB2CSettings,
    FacebookSettings,
    GoogleSettings,
    IdentitySettings,
)
from service_identity.app.transport import TransportResponse

REDIRECT_BASE = "https://app.example.com"

GOOGLE_CLIENT_ID = "google-client.apps.googleusercontent.com"
GOOGLE_CLIENT_SECRET = "google-secret-7f3a9c"
FACEBOOK_APP_ID = "1234567890"
FACEBOOK_APP_SECRET = "facebook-secret-51d2e8"
APPLE_CLIENT_ID = "com.example.web"
APPLE_TEAM_ID = "TEAM123456"
APPLE_KEY_ID = "KEY1234567"
B2C_CLIENT_ID = "b2c-client-0f9e"
B2C_CLIENT_SECRET = "b2c-secret-6a7b8c"
B2C_TENANT = "contoso"
B2C_TENANT_ID = "11111111-2222-3333-4444-555555555555"


class StubTransport:
    """Scripted ``HttpTransport``.

    Routes map ``(METHOD, url)`` to a queue of responses. Each response is
    a ``(status, payload)`` tuple, an exception instance to raise, or a
    callable taking the recorded call (sync or async). The last queued
    response repeats.
    """

    def __init__(self):
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, url: str, *responses: Any) -> "StubTransport":
        self.routes.setdefault((method.upper(), url), []).extend(responses)
        return self

    def calls_to(self, url: str, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            call for call in self.calls
            if call["url"] == url and (method is None or call["method"] == method.upper())
        ]

    async def _dispatch(self, method: str, url: str, params, data, headers) -> TransportResponse:
        call = {
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "data": dict(data or {}),
            "headers": dict(headers or {}),
        }
        self.calls.append(call)
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"Unexpected {method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(call)
            if inspect.isawaitable(response):
                response = await response
        status, payload = response
        return TransportResponse(status_code=status, payload=payload)

    async def get(self, provider, url, *, params=None, headers=None) -> TransportResponse:
        return await self._dispatch("GET", url, params, None, headers)

    async def post_form(self, provider, url, data, *, params=None, headers=None) -> TransportResponse:
        return await self._dispatch("POST", url, params, data, headers)


@pytest.fixture
def transport():
    return StubTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture(scope="session")
def rsa_key():
    return generate_rsa_key("rsa-key-1")


@pytest.fixture(scope="session")
def ec_key():
    return generate_ec_key("ec-key-1")


@pytest.fixture(scope="session")
def assertion_rsa_key():
    return generate_rsa_key("assertion-key")


@pytest.fixture
def google_settings():
    return GoogleSettings(
        enabled=True,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
    )


@pytest.fixture
def facebook_settings():
    return FacebookSettings(
        enabled=True,
        client_id=FACEBOOK_APP_ID,
        client_secret=FACEBOOK_APP_SECRET,
        scopes=["email", "public_profile"],
        use_long_lived_tokens=False,
    )


@pytest.fixture
def apple_settings(ec_key):
    return AppleSettings(
        enabled=True,
        client_id=APPLE_CLIENT_ID,
        team_id=APPLE_TEAM_ID,
        key_id=APPLE_KEY_ID,
        private_key=ec_key.private_pem,
    )


@pytest.fixture
def azure_settings():
    return AzureB2CSettings(
        enabled=True,
        client_id=B2C_CLIENT_ID,
        client_secret=B2C_CLIENT_SECRET,
        tenant_name=B2C_TENANT,
        tenant_id=B2C_TENANT_ID,
        reset_password_policy="B2C_1_reset",
        edit_profile_policy="B2C_1_edit",
    )


@pytest.fixture
def identity_settings(google_settings, facebook_settings, apple_settings, azure_settings):
    return IdentitySettings(
        redirect_base_url=REDIRECT_BASE,
        google=google_settings,
        facebook=facebook_settings,
        apple=apple_settings,
        azure_b2c=azure_settings,
    )
