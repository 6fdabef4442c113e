"""
OAuth authorization-code flow orchestration.

Each login is an ``AuthenticationAttempt`` that moves through
``FlowState``; any contract violation moves it to ``REJECTED`` and the
error propagates to the caller unchanged.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from pydantic import BaseModel, Field

from shared.errors import (
    IdentityException,
    InvalidArgumentError,
    InvalidCallbackError,
    InvalidProviderError,
    ProviderUnavailableError,
)
from shared.logging import get_logger, set_auth_context
from shared.metrics import MetricsCollector
from service_identity.app.factory import ProviderFactory
from service_identity.app.flow.state_store import StateStore
from service_identity.app.models import AuthorizationRequest, SessionInfo, TokenResponse, UserInfo
from service_identity.app.providers.base import IdentityProvider
from service_identity.app.sessions import SessionStore


class FlowState(str, Enum):
    START = "start"
    AUTHORIZATION_ISSUED = "authorization_issued"
    CALLBACK_RECEIVED = "callback_received"
    CODE_EXCHANGED = "code_exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS = {
    FlowState.START: {FlowState.AUTHORIZATION_ISSUED},
    FlowState.AUTHORIZATION_ISSUED: {FlowState.CALLBACK_RECEIVED, FlowState.REJECTED},
    FlowState.CALLBACK_RECEIVED: {FlowState.CODE_EXCHANGED, FlowState.REJECTED},
    FlowState.CODE_EXCHANGED: {FlowState.IDENTITY_RESOLVED, FlowState.REJECTED},
    FlowState.IDENTITY_RESOLVED: {FlowState.SESSION_ESTABLISHED, FlowState.REJECTED},
    FlowState.SESSION_ESTABLISHED: set(),
    FlowState.REJECTED: set(),
}


class InvalidTransitionError(RuntimeError):
    pass


class AuthenticationAttempt(BaseModel):
    """Progress of one login through the flow."""

    provider: str
    state: FlowState = FlowState.START
    history: List[FlowState] = Field(default_factory=lambda: [FlowState.START])
    rejection: Optional[str] = None

    def advance(self, target: FlowState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {target.value}")
        self.state = target
        self.history.append(target)

    def reject(self, reason: str) -> None:
        self.advance(FlowState.REJECTED)
        self.rejection = reason

    @property
    def completed(self) -> bool:
        return self.state == FlowState.SESSION_ESTABLISHED


class AuthenticationResult(BaseModel):
    """Outcome of a successful callback."""

    user: UserInfo
    session: SessionInfo
    attempt: AuthenticationAttempt
    return_url: str = "/"


class OAuthFlowOrchestrator:
    """Ties authorization-request issuance to callback handling."""

    def __init__(self,
                 factory: ProviderFactory,
                 state_store: StateStore,
                 session_store: SessionStore,
                 metrics: Optional[MetricsCollector] = None,
                 call_timeout: float = 10.0,
                 clock: Callable[[], float] = time.time):
        self.factory = factory
        self.state_store = state_store
        self.session_store = session_store
        self.metrics = metrics
        self.call_timeout = call_timeout
        self._clock = clock
        self.logger = get_logger("identity.flow")

    async def start_login(self,
                          provider: str,
                          return_url: Optional[str] = None,
                          extra_params: Optional[Mapping[str, Any]] = None,
                          policy: Optional[str] = None) -> AuthorizationRequest:
        """Issue and store a fresh authorization request."""
        selected = self.factory.require_provider(provider)
        attempt = AuthenticationAttempt(provider=selected.name)

        request = selected.create_authorization_request(return_url, extra_params, policy)
        await self.state_store.save(request)
        attempt.advance(FlowState.AUTHORIZATION_ISSUED)

        if self.metrics is not None:
            self.metrics.record_login_started(selected.name)
        self.logger.info("Authorization issued", provider=selected.name, policy=request.policy,
                         expires_at=request.expires_at)
        return request

    async def handle_callback(self, provider: str, code: Optional[str], state: Optional[str]) -> AuthenticationResult:
        """Consume the state, exchange the code, resolve identity and open a session."""
        provider_key = (provider or "").strip().lower()
        attempt = AuthenticationAttempt(provider=provider_key or "<empty>")
        attempt.advance(FlowState.AUTHORIZATION_ISSUED)
        set_auth_context(provider=provider_key or None)

        try:
            if code is None or not isinstance(code, str) or not code.strip():
                raise InvalidArgumentError("Authorization code is required")
            selected = self.factory.get_provider(provider_key)
            if selected is None:
                raise InvalidProviderError(provider_key or "<empty>")
            request = await self._consume_state(selected, state)
            attempt.advance(FlowState.CALLBACK_RECEIVED)

            tokens = await self._exchange(selected, request, code)
            attempt.advance(FlowState.CODE_EXCHANGED)

            user = await self._bounded(selected, selected.fetch_identity(tokens, nonce=request.nonce),
                                       "identity fetch")
            attempt.advance(FlowState.IDENTITY_RESOLVED)

            session = await self.session_store.create(user.user_id, selected.name)
            attempt.advance(FlowState.SESSION_ESTABLISHED)
        except IdentityException as e:
            attempt.reject(e.code)
            self._record(provider_key, e.code)
            self.logger.warning("Authentication rejected", provider=provider_key,
                                error_code=e.code, stage=attempt.history[-2].value)
            raise

        set_auth_context(user_id=user.user_id, provider=selected.name)
        self._record(selected.name, "success")
        self.logger.info("Authentication succeeded", provider=selected.name, user_id=user.user_id)
        return AuthenticationResult(user=user, session=session, attempt=attempt, return_url=request.return_url)

    async def _consume_state(self, provider: IdentityProvider, state: Optional[str]) -> AuthorizationRequest:
        if state is None or not isinstance(state, str) or not state.strip():
            raise InvalidCallbackError("State is missing", {"provider": provider.name})
        request = await self.state_store.consume(state.strip())
        if request is None:
            self.logger.warning("Unknown or already consumed state", provider=provider.name)
            raise InvalidCallbackError("State is unknown or already used", {"provider": provider.name})
        if request.provider != provider.name:
            self.logger.warning("State issued for another provider", provider=provider.name)
            raise InvalidCallbackError("State was issued for a different provider", {"provider": provider.name})
        if request.is_expired(self._clock()):
            raise InvalidCallbackError("State has expired", {"provider": provider.name})
        return request

    async def _exchange(self, provider: IdentityProvider, request: AuthorizationRequest, code: str) -> TokenResponse:
        """Exchange the code; a transient failure puts the state back for one retry."""
        exchange = provider.exchange_code(code, request.state, code_verifier=request.code_verifier,
                                          policy=request.policy)
        try:
            return await self._bounded(provider, exchange, "code exchange")
        except ProviderUnavailableError:
            await self._release(request)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._release(request))
            raise

    async def _bounded(self, provider: IdentityProvider, call, operation: str):
        try:
            if self.metrics is not None:
                with self.metrics.time_provider_call(provider.name, operation):
                    return await asyncio.wait_for(call, timeout=self.call_timeout)
            return await asyncio.wait_for(call, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            self.logger.error("Provider call timed out", provider=provider.name, operation=operation)
            raise ProviderUnavailableError(provider.name, f"{operation} timed out") from None

    async def _release(self, request: AuthorizationRequest) -> None:
        released = await self.state_store.release(request)
        if released:
            self.logger.info("State released after transient failure", provider=request.provider)

    def _record(self, provider: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_callback(provider or "unknown", outcome)

