"""
HTTP transport for provider network calls.

Providers talk to their endpoints only through an ``HttpTransport`` so the
network can be replaced in tests. The httpx implementation wraps every
call in the provider's circuit breaker, bounds it with a timeout and maps
network failures and 5xx responses to ``ProviderUnavailableError``.
Idempotent GETs are retried; form POSTs (code exchange) never are.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from shared.circuit_breaker import CircuitBreakerOpenException, CircuitBreakerRegistry
from shared.errors import ProviderUnavailableError
from shared.logging import get_logger
from shared.retry import RetryConfig, call_with_retry


@dataclass(frozen=True)
class TransportResponse:
    """Status code plus the decoded JSON object body."""
    status_code: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpTransport(Protocol):
    async def get(self, provider: str, url: str, *,
                  params: Optional[Mapping[str, Any]] = None,
                  headers: Optional[Mapping[str, str]] = None) -> TransportResponse:
        ...

    async def post_form(self, provider: str, url: str, data: Mapping[str, Any], *,
                        params: Optional[Mapping[str, Any]] = None,
                        headers: Optional[Mapping[str, str]] = None) -> TransportResponse:
        ...


class UpstreamServerError(Exception):
    """A provider answered with a 5xx status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"upstream returned {status_code}")


def _decode(response: httpx.Response) -> TransportResponse:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {"data": body}
    return TransportResponse(status_code=response.status_code, payload=body)


class HttpxTransport:
    """``HttpTransport`` backed by ``httpx.AsyncClient``."""

    def __init__(self,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0,
                 breakers: Optional[CircuitBreakerRegistry] = None,
                 retry_config: Optional[RetryConfig] = None):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._breakers = breakers or CircuitBreakerRegistry()
        self._retry_config = retry_config or RetryConfig()
        self.logger = get_logger("identity.transport")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def get(self, provider: str, url: str, *,
                  params: Optional[Mapping[str, Any]] = None,
                  headers: Optional[Mapping[str, str]] = None) -> TransportResponse:
        async def send() -> TransportResponse:
            response = await self._get_client().get(
                url, params=dict(params or {}), headers=dict(headers or {}), timeout=self.timeout
            )
            if response.status_code >= 500:
                raise UpstreamServerError(response.status_code)
            return _decode(response)

        return await self._execute(provider, "get", send, retry=True)

    async def post_form(self, provider: str, url: str, data: Mapping[str, Any], *,
                        params: Optional[Mapping[str, Any]] = None,
                        headers: Optional[Mapping[str, str]] = None) -> TransportResponse:
        request_headers = {"Accept": "application/json"}
        request_headers.update(headers or {})

        async def send() -> TransportResponse:
            response = await self._get_client().post(
                url, data=dict(data), params=dict(params or {}), headers=request_headers, timeout=self.timeout
            )
            if response.status_code >= 500:
                raise UpstreamServerError(response.status_code)
            return _decode(response)

        return await self._execute(provider, "post", send, retry=False)

    async def _execute(self, provider: str, operation: str, send, retry: bool) -> TransportResponse:
        breaker = self._breakers.get(provider, tracked_exceptions=(httpx.HTTPError, UpstreamServerError))
        try:
            if retry:
                return await call_with_retry(
                    breaker.call, send,
                    exceptions=(httpx.TransportError, UpstreamServerError),
                    config=self._retry_config,
                    name=f"{provider}.{operation}",
                )
            return await breaker.call(send)
        except CircuitBreakerOpenException:
            self.logger.warning("Provider circuit open", provider=provider, operation=operation)
            raise ProviderUnavailableError(provider, "circuit open") from None
        except httpx.TimeoutException:
            self.logger.error("Provider call timed out", provider=provider, operation=operation)
            raise ProviderUnavailableError(provider, "request timed out") from None
        except UpstreamServerError as e:
            self.logger.error("Provider server error", provider=provider, operation=operation,
                              status_code=e.status_code)
            raise ProviderUnavailableError(provider, str(e), {"status_code": e.status_code}) from None
        except httpx.HTTPError as e:
            self.logger.error("Provider call failed", provider=provider, operation=operation,
                              error=type(e).__name__)
            raise ProviderUnavailableError(provider, f"network error ({type(e).__name__})") from None

    def circuit_states(self) -> Dict[str, Dict[str, Any]]:
        return self._breakers.get_all_states()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
