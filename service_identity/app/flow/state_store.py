"""
Storage for pending authorization requests, keyed by state.

``consume`` is the only way a request leaves the store and it is atomic:
two callbacks racing on the same state cannot both receive the request.
"""

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Union

import redis.asyncio as redis

from shared.logging import get_logger
from service_identity.app.models import AuthorizationRequest


class StateStore(Protocol):
    async def save(self, request: AuthorizationRequest) -> None:
        ...

    async def consume(self, state: str) -> Optional[AuthorizationRequest]:
        ...

    async def release(self, request: AuthorizationRequest) -> bool:
        ...


class InMemoryStateStore:
    """Process-local store for single-instance deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._requests: Dict[str, AuthorizationRequest] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("identity.flow.state_store")

    def __len__(self) -> int:
        return len(self._requests)

    def _purge_expired(self, now: float) -> None:
        expired = [state for state, request in self._requests.items() if request.is_expired(now)]
        for state in expired:
            del self._requests[state]
        if expired:
            self.logger.debug("Purged expired authorization requests", count=len(expired))

    async def save(self, request: AuthorizationRequest) -> None:
        with self._lock:
            self._purge_expired(self._clock())
            self._requests[request.state] = request

    async def consume(self, state: str) -> Optional[AuthorizationRequest]:
        with self._lock:
            return self._requests.pop(state, None)

    async def release(self, request: AuthorizationRequest) -> bool:
        """Put a consumed request back once, if it has not expired."""
        if request.released or request.is_expired(self._clock()):
            return False
        with self._lock:
            if request.state in self._requests:
                return False
            self._requests[request.state] = request.model_copy(update={"released": True})
        return True


class RedisStateStore:
    """Shared store for multi-instance deployments.

    Entries expire through Redis TTLs; ``consume`` uses GETDEL so exactly
    one caller gets a given state.
    """

    def __init__(self,
                 client: Union[redis.Redis, str],
                 prefix: str = "identity:state:",
                 clock: Callable[[], float] = time.time):
        self.redis = redis.from_url(client, decode_responses=True) if isinstance(client, str) else client
        self.prefix = prefix
        self._clock = clock
        self.logger = get_logger("identity.flow.state_store.redis")

    def _key(self, state: str) -> str:
        return f"{self.prefix}{state}"

    def _ttl(self, request: AuthorizationRequest) -> int:
        return max(1, int(request.remaining_seconds(self._clock())))

    async def save(self, request: AuthorizationRequest) -> None:
        await self.redis.set(self._key(request.state), request.model_dump_json(), ex=self._ttl(request))

    async def consume(self, state: str) -> Optional[AuthorizationRequest]:
        raw = await self.redis.getdel(self._key(state))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return AuthorizationRequest.model_validate_json(raw)

    async def release(self, request: AuthorizationRequest) -> bool:
        if request.released or request.is_expired(self._clock()):
            return False
        released = request.model_copy(update={"released": True})
        stored = await self.redis.set(self._key(request.state), released.model_dump_json(),
                                      ex=self._ttl(request), nx=True)
        return bool(stored)

    async def close(self) -> None:
        await self.redis.close()
