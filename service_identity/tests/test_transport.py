"""
Unit tests for the httpx transport.
"""

import httpx
import pytest

from shared.circuit_breaker import CircuitBreakerRegistry
from shared.errors import ProviderUnavailableError
from shared.retry import RetryConfig
from service_identity.app.transport import HttpxTransport

URL = "https://provider.example.com/endpoint"


def build_transport(handler, failure_threshold=5):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport(
        client=client,
        timeout=1.0,
        breakers=CircuitBreakerRegistry(failure_threshold=failure_threshold, recovery_timeout=60.0),
        retry_config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=False),
    )


class TestHttpxTransport:
    """Test cases for HttpxTransport."""

    @pytest.mark.asyncio
    async def test_get_decodes_json(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"sub": "user-1"})

        transport = build_transport(handler)

        response = await transport.get("google", URL, params={"a": "1"}, headers={"Authorization": "Bearer t"})

        assert response.ok is True
        assert response.payload == {"sub": "user-1"}
        assert seen[0].url.params["a"] == "1"
        assert seen[0].headers["Authorization"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_non_object_body_is_wrapped(self):
        transport = build_transport(lambda request: httpx.Response(200, json=[1, 2]))

        response = await transport.get("google", URL)

        assert response.payload == {"data": [1, 2]}

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        transport = build_transport(lambda request: httpx.Response(200, text="<html>"))

        response = await transport.get("google", URL)

        assert response.payload == {}

    @pytest.mark.asyncio
    async def test_client_error_is_returned(self):
        """4xx responses are answers, not outages."""
        transport = build_transport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

        response = await transport.post_form("google", URL, {"code": "abc"})

        assert response.ok is False
        assert response.status_code == 400
        assert response.payload["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_get_retries_server_errors(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"keys": []})

        transport = build_transport(handler)

        response = await transport.get("google", URL)

        assert response.ok is True
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_post_is_never_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(502)

        transport = build_transport(handler)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await transport.post_form("google", URL, {"code": "abc", "client_secret": "super-secret-value"})

        assert len(attempts) == 1
        assert exc_info.value.retryable is True
        assert "super-secret-value" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = build_transport(handler)

        with pytest.raises(ProviderUnavailableError):
            await transport.get("google", URL)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport = build_transport(handler)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await transport.post_form("apple", URL, {"code": "abc"})

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_circuit_opens(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500)

        transport = build_transport(handler, failure_threshold=2)

        for _ in range(2):
            with pytest.raises(ProviderUnavailableError):
                await transport.post_form("facebook", URL, {})
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await transport.post_form("facebook", URL, {})

        assert len(attempts) == 2
        assert "circuit open" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_circuits_are_per_provider(self):
        def handler(request):
            if request.url.host == "down.example.com":
                return httpx.Response(500)
            return httpx.Response(200, json={})

        transport = build_transport(handler, failure_threshold=1)

        with pytest.raises(ProviderUnavailableError):
            await transport.post_form("facebook", "https://down.example.com/token", {})
        response = await transport.post_form("google", "https://up.example.com/token", {})

        assert response.ok is True
        states = transport.circuit_states()
        assert states["facebook"]["state"] == "open"
        assert states["google"]["state"] == "closed"
