"""
Cross-cutting request defenses: CSRF tokens and sliding-window rate limits.
"""

from .csrf import CsrfGuard
from .ratelimit import RateLimitDecision, RedisSlidingWindowRateLimiter, SlidingWindowRateLimiter

__all__ = [
    "CsrfGuard",
    "RateLimitDecision",
    "RedisSlidingWindowRateLimiter",
    "SlidingWindowRateLimiter",
]
