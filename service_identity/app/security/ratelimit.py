"""
Sliding-window rate limiting keyed by caller identity.

A request is admitted when fewer than ``requests_per_window`` requests for
its key (and, when configured, fewer than the global ceiling across all
keys) were admitted in the trailing ``window_seconds``. Rejected requests
are not counted.
"""

import math
import threading
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple, Union

import redis.asyncio as redis
from pydantic import BaseModel

from shared.errors import InvalidArgumentError, RateLimitError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

SCOPE_KEY = "key"
SCOPE_GLOBAL = "global"


class RateLimitDecision(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0
    scope: Optional[str] = None


def _check_limits(requests_per_window: int, window_seconds: float,
                  global_requests_per_window: Optional[int]) -> None:
    if requests_per_window < 1:
        raise InvalidArgumentError("requests_per_window must be at least 1")
    if window_seconds <= 0:
        raise InvalidArgumentError("window_seconds must be positive")
    if global_requests_per_window is not None and global_requests_per_window < 1:
        raise InvalidArgumentError("global_requests_per_window must be at least 1")


class _RejectionReporting:
    """Shared ``enforce`` for both limiter backends."""

    metrics: Optional[MetricsCollector]

    async def check(self, key: str) -> RateLimitDecision:
        raise NotImplementedError

    def _record_rejection(self, key: str, decision: RateLimitDecision) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limited(decision.scope or SCOPE_KEY)
        self.logger.warning("Rate limit exceeded", client_id=key, scope=decision.scope,
                            limit=decision.limit, retry_after=round(decision.retry_after, 3))

    async def enforce(self, key: str) -> RateLimitDecision:
        decision = await self.check(key)
        if not decision.allowed:
            raise RateLimitError(
                details={"scope": decision.scope, "limit": decision.limit},
                retry_after=max(1, math.ceil(decision.retry_after)),
            )
        return decision


class SlidingWindowRateLimiter(_RejectionReporting):
    """In-process limiter.

    Each key holds a deque of admission times. Pruning, counting and
    appending happen under one lock; keys whose window has emptied are
    swept periodically.
    """

    def __init__(self,
                 requests_per_window: int,
                 window_seconds: float,
                 global_requests_per_window: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic,
                 metrics: Optional[MetricsCollector] = None,
                 sweep_interval: Optional[float] = None):
        _check_limits(requests_per_window, window_seconds, global_requests_per_window)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.global_requests_per_window = global_requests_per_window
        self.metrics = metrics
        self.sweep_interval = sweep_interval if sweep_interval is not None else window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._global: Deque[float] = deque()
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self.logger = get_logger("identity.security.ratelimit")

    def __len__(self) -> int:
        return len(self._windows)

    @staticmethod
    def _prune(window: Deque[float], cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in list(self._windows):
            window = self._windows[key]
            self._prune(window, cutoff)
            if not window:
                del self._windows[key]
        self._last_sweep = now

    async def check(self, key: str) -> RateLimitDecision:
        """Admit and count the request, or report why it was refused."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)

            if self.global_requests_per_window is not None:
                self._prune(self._global, cutoff)
                if len(self._global) >= self.global_requests_per_window:
                    decision = RateLimitDecision(
                        allowed=False,
                        limit=self.global_requests_per_window,
                        remaining=0,
                        retry_after=max(0.0, self._global[0] + self.window_seconds - now),
                        scope=SCOPE_GLOBAL,
                    )
                    self._record_rejection(key, decision)
                    return decision

            window = self._windows.setdefault(key, deque())
            self._prune(window, cutoff)
            if len(window) >= self.requests_per_window:
                decision = RateLimitDecision(
                    allowed=False,
                    limit=self.requests_per_window,
                    remaining=0,
                    retry_after=max(0.0, window[0] + self.window_seconds - now),
                    scope=SCOPE_KEY,
                )
                self._record_rejection(key, decision)
                return decision

            window.append(now)
            if self.global_requests_per_window is not None:
                self._global.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.requests_per_window,
                remaining=self.requests_per_window - len(window),
            )

    async def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
                self._global.clear()
            else:
                self._windows.pop(key, None)


class RedisSlidingWindowRateLimiter(_RejectionReporting):
    """Limiter shared across instances, one sorted set per key.

    Window maintenance and admission run in a MULTI/EXEC pipeline; an
    over-limit admission is removed again so refused requests do not count.
    A request refused by its per-key window also gives back its slot in the
    global window.
    """

    def __init__(self,
                 client: Union[redis.Redis, str],
                 requests_per_window: int,
                 window_seconds: float,
                 global_requests_per_window: Optional[int] = None,
                 prefix: str = "identity:ratelimit:",
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        _check_limits(requests_per_window, window_seconds, global_requests_per_window)
        self.redis = redis.from_url(client, decode_responses=True) if isinstance(client, str) else client
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.global_requests_per_window = global_requests_per_window
        self.prefix = prefix
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("identity.security.ratelimit.redis")

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def _admit(self, redis_key: str, limit: int, now: float) -> Tuple[str, Optional[float]]:
        """Count one request; return its member and the retry delay when over ``limit``."""
        member = f"{now}:{uuid.uuid4().hex}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, math.ceil(self.window_seconds))
            results = await pipe.execute()
        if results[2] <= limit:
            return member, None
        await self.redis.zrem(redis_key, member)
        oldest = await self.redis.zrange(redis_key, 0, 0, withscores=True)
        if not oldest:
            return member, 0.0
        return member, max(0.0, float(oldest[0][1]) + self.window_seconds - now)

    async def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        global_member = None
        if self.global_requests_per_window is not None:
            global_member, retry_after = await self._admit(
                self._key(SCOPE_GLOBAL), self.global_requests_per_window, now)
            if retry_after is not None:
                decision = RateLimitDecision(allowed=False, limit=self.global_requests_per_window,
                                             remaining=0, retry_after=retry_after, scope=SCOPE_GLOBAL)
                self._record_rejection(key, decision)
                return decision

        _, retry_after = await self._admit(self._key(f"client:{key}"), self.requests_per_window, now)
        if retry_after is not None:
            if global_member is not None:
                await self.redis.zrem(self._key(SCOPE_GLOBAL), global_member)
            decision = RateLimitDecision(allowed=False, limit=self.requests_per_window,
                                         remaining=0, retry_after=retry_after, scope=SCOPE_KEY)
            self._record_rejection(key, decision)
            return decision

        count = await self.redis.zcard(self._key(f"client:{key}"))
        return RateLimitDecision(allowed=True, limit=self.requests_per_window,
                                 remaining=max(0, self.requests_per_window - int(count)))

    async def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            await self.redis.delete(self._key(SCOPE_GLOBAL))
        else:
            await self.redis.delete(self._key(f"client:{key}"))


RateLimiter = Union[SlidingWindowRateLimiter, RedisSlidingWindowRateLimiter]
