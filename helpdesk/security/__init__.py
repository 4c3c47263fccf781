"""Request throttling for the HTTP layer."""

from .rate_limiter import RateLimitDecision, RateLimitExceeded, SlidingWindowRateLimiter

__all__ = ["RateLimitDecision", "RateLimitExceeded", "SlidingWindowRateLimiter"]
