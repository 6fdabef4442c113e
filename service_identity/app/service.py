"""
Identity service facade.

Composes the provider factory, flow orchestrator, session validator, CSRF
guard and rate limiter into the operations a host application calls.
"""

import time
from typing import Any, Callable, List, Mapping, Optional

from shared.config import BaseConfig, get_config
from shared.circuit_breaker import CircuitBreakerRegistry
from shared.errors import InvalidArgumentError
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig
from shared.secrets_manager import SecretResolver
from service_identity.app.factory import ProviderFactory
from service_identity.app.flow.orchestrator import AuthenticationResult, OAuthFlowOrchestrator
from service_identity.app.flow.state_store import InMemoryStateStore, RedisStateStore, StateStore
from service_identity.app.models import (
    ProviderCapability,
    ProviderDescriptor,
    ProviderValidationResult,
    SessionInfo,
)
from service_identity.app.providers.azure_b2c import PolicyKind
from service_identity.app.security.csrf import CsrfGuard
from service_identity.app.security.ratelimit import RateLimiter, RedisSlidingWindowRateLimiter, SlidingWindowRateLimiter
from service_identity.app.sessions import InMemorySessionStore, SessionStore, SessionValidator
from service_identity.app.settings import IdentitySettings
from service_identity.app.transport import HttpTransport, HttpxTransport

ANONYMOUS_CLIENT = "anonymous"


class IdentityService:
    """Host-facing entry point for login, callback, session and sign-out."""

    def __init__(self,
                 factory: ProviderFactory,
                 orchestrator: OAuthFlowOrchestrator,
                 sessions: SessionValidator,
                 csrf_guard: CsrfGuard,
                 rate_limiter: Optional[RateLimiter] = None):
        self.factory = factory
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.csrf_guard = csrf_guard
        self.rate_limiter = rate_limiter
        self.logger = get_logger("identity.service")

    @classmethod
    def create(cls,
               settings: Optional[IdentitySettings] = None,
               config: Optional[BaseConfig] = None,
               transport: Optional[HttpTransport] = None,
               secret_resolver: Optional[SecretResolver] = None,
               metrics: Optional[MetricsCollector] = None,
               session_store: Optional[SessionStore] = None,
               state_store: Optional[StateStore] = None,
               distributed: bool = False,
               clock: Callable[[], float] = time.time) -> "IdentityService":
        """Wire the service from configuration.

        With ``distributed=True`` pending requests and rate-limit windows
        live in Redis (``config.redis_url``) so several instances can share
        them; otherwise everything is in-process.
        """
        config = config or get_config()
        settings = settings or IdentitySettings()
        configure_logging("identity", config.log_level)
        metrics = metrics or get_metrics_collector()
        if transport is None:
            transport = HttpxTransport(
                timeout=config.http_timeout_seconds,
                breakers=CircuitBreakerRegistry(config.circuit_failure_threshold, config.circuit_recovery_seconds),
                retry_config=RetryConfig(),
            )

        factory = ProviderFactory(settings, transport, secret_resolver=secret_resolver,
                                  metrics=metrics, clock=clock)
        if state_store is None:
            state_store = RedisStateStore(config.redis_url, clock=clock) if distributed else InMemoryStateStore(clock)
        if session_store is None:
            session_store = InMemorySessionStore(config.session_ttl_seconds, clock=clock)

        if distributed:
            rate_limiter = RedisSlidingWindowRateLimiter(
                config.redis_url,
                config.rate_limit_requests,
                config.rate_limit_window_seconds,
                global_requests_per_window=config.rate_limit_global_requests,
                metrics=metrics,
            )
        else:
            rate_limiter = SlidingWindowRateLimiter(
                config.rate_limit_requests,
                config.rate_limit_window_seconds,
                global_requests_per_window=config.rate_limit_global_requests,
                metrics=metrics,
            )

        orchestrator = OAuthFlowOrchestrator(factory, state_store, session_store, metrics=metrics,
                                             call_timeout=config.http_timeout_seconds, clock=clock)
        service = cls(
            factory=factory,
            orchestrator=orchestrator,
            sessions=SessionValidator(session_store, clock=clock),
            csrf_guard=CsrfGuard(config.csrf_token_ttl_seconds, clock=clock,
                                 exempt_paths=config.csrf_exempt_paths, metrics=metrics),
            rate_limiter=rate_limiter,
        )
        service.logger.info(
            "Identity service configured",
            env=config.env,
            distributed=distributed,
            providers=[descriptor.name for descriptor in factory.list_descriptors()],
        )
        return service

    async def _throttle(self, client_key: Optional[str]) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.enforce(client_key or ANONYMOUS_CLIENT)

    # Login ---------------------------------------------------------------

    async def start_login(self,
                          provider: Optional[str],
                          return_url: Optional[str] = None,
                          client_key: Optional[str] = None,
                          extra_params: Optional[Mapping[str, Any]] = None,
                          policy: Optional[str] = None) -> str:
        """Authorization URL to redirect the browser to.

        With no provider name the default provider is used.
        """
        await self._throttle(client_key)
        if not provider:
            default = self.factory.get_default_provider()
            provider = default.name if default is not None else provider
        request = await self.orchestrator.start_login(provider, return_url, extra_params, policy)
        return request.authorization_url

    async def handle_callback(self,
                              provider: str,
                              code: Optional[str],
                              state: Optional[str],
                              client_key: Optional[str] = None) -> AuthenticationResult:
        await self._throttle(client_key)
        return await self.orchestrator.handle_callback(provider, code, state)

    async def start_password_reset(self,
                                   provider: str,
                                   return_url: Optional[str] = None,
                                   client_key: Optional[str] = None) -> str:
        """Password-reset entry point: a policy flow where supported, else a static page."""
        selected = self.factory.require_provider(provider)
        if ProviderCapability.PASSWORD_RESET not in selected.capabilities:
            raise InvalidArgumentError("Provider does not support password reset", {"provider": selected.name})
        if selected.supports_policies:
            return await self.start_login(selected.name, return_url, client_key,
                                          policy=PolicyKind.PASSWORD_RESET.value)
        url = selected.build_password_reset_url()
        if not url:
            raise InvalidArgumentError("Provider does not support password reset", {"provider": selected.name})
        return url

    def build_logout_url(self, provider: str, post_logout_redirect_uri: Optional[str] = None) -> Optional[str]:
        return self.factory.require_provider(provider).build_logout_url(post_logout_redirect_uri)

    # Sessions ------------------------------------------------------------

    async def validate_session(self, session_id: Optional[str]) -> SessionInfo:
        return await self.sessions.validate(session_id)

    async def issue_csrf_token(self, session_id: str) -> str:
        session = await self.sessions.validate(session_id)
        return self.csrf_guard.issue_token(session.session_id)

    async def sign_out(self, session_id: Optional[str], csrf_token: Optional[str] = None) -> bool:
        """Invalidate the session; the request must carry its CSRF token."""
        if not session_id or not session_id.strip():
            raise InvalidArgumentError("Session id is required")
        self.csrf_guard.enforce(session_id, csrf_token)
        signed_out = await self.sessions.invalidate(session_id)
        self.csrf_guard.revoke(session_id)
        return signed_out

    # Providers -----------------------------------------------------------

    def list_providers(self) -> List[ProviderDescriptor]:
        return self.factory.list_descriptors()

    def validate_configuration(self) -> ProviderValidationResult:
        return self.factory.validate_providers()
