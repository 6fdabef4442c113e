"""
Retry helpers for idempotent provider calls.

Only safe, repeatable reads (key set downloads, user-info, Graph API GETs)
go through here. Authorization code exchange is single-use and never
retried.
"""

import asyncio
import random
from typing import Any, Callable, Awaitable, Optional, Tuple, Type

from shared.logging import get_logger


class RetryConfig:
    """Backoff policy for provider GETs."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.2,
                 max_delay: float = 2.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with a cap and 10% jitter."""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.0, delay)


async def call_with_retry(func: Callable[..., Awaitable[Any]],
                          *args,
                          exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                          config: Optional[RetryConfig] = None,
                          name: Optional[str] = None,
                          **kwargs) -> Any:
    """Await ``func`` up to ``config.max_attempts`` times.

    The last exception is re-raised unchanged when attempts run out, so
    callers keep seeing their own error taxonomy.
    """
    config = config or RetryConfig()
    label = name or getattr(func, "__name__", "call")
    logger = get_logger(f"identity.retry.{label}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
        except exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    "Provider read failed after all attempts",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    error=type(e).__name__,
                )
                raise
            delay = _calculate_delay(attempt, config)
            logger.warning(
                "Provider read failed, backing off",
                attempt=attempt,
                delay=delay,
                error=type(e).__name__,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info("Provider read recovered", attempt=attempt)
            return result

    raise RuntimeError("unreachable")  # pragma: no cover

