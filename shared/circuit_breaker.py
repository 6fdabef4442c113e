"""
Circuit breaker guarding outbound calls to identity providers.

One breaker exists per provider name. An open breaker short-circuits calls
so a failing provider does not tie up callers waiting on network timeouts.
"""

import time
import threading
from enum import Enum
from typing import Dict, Any, Callable, Awaitable, Optional, Tuple, Type

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # one probe call allowed through


class CircuitBreakerOpenException(Exception):
    """Raised when a call is blocked by an open breaker."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker '{name}' is OPEN - blocking call")


class CircuitBreaker:
    """Counts consecutive failures and opens after ``failure_threshold``.

    Only exceptions listed in ``tracked_exceptions`` count as failures.
    Caller errors (bad input, rejected tokens) must not open the breaker,
    so transports pass their network error types here.
    """

    def __init__(self,
                 name: str = "default",
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 tracked_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.tracked_exceptions = tracked_exceptions
        self._clock = clock
        self._lock = threading.Lock()
        self.logger = get_logger(f"identity.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0

    def _allow(self) -> bool:
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if self._clock() - self._opened_at < self.recovery_timeout:
                    return False
                self._state = CircuitBreakerState.HALF_OPEN
                self.logger.info("Provider circuit half-open, probing")
            return True

    def _record_success(self) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                self.logger.info("Provider circuit closed after successful probe")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if (self._state == CircuitBreakerState.HALF_OPEN
                    or self._failure_count >= self.failure_threshold):
                self._state = CircuitBreakerState.OPEN
                self._opened_at = self._clock()
                self.logger.warning(
                    "Provider circuit opened",
                    failures=self._failure_count,
                    threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute ``func`` under breaker protection."""
        if not self._allow():
            raise CircuitBreakerOpenException(self.name)

        try:
            result = await func(*args, **kwargs)
        except self.tracked_exceptions:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0

    def is_open(self) -> bool:
        with self._lock:
            return self._state is CircuitBreakerState.OPEN

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for health endpoints; never includes the last error text."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
            }


class CircuitBreakerRegistry:
    """Hands out one breaker per provider name."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str,
            tracked_exceptions: Tuple[Type[BaseException], ...] = (Exception,)) -> CircuitBreaker:
        key = name.lower()
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=key,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    tracked_exceptions=tracked_exceptions,
                )
                self._breakers[key] = breaker
            return breaker

    def get_all_states(self, name: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = dict(self._breakers)
        return {
            key: breaker.get_state()
            for key, breaker in breakers.items()
            if name is None or key == name.lower()
        }
