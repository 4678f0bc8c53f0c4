"""Per-service rate limiting for external API calls."""

from tracker.ratelimit.limiter import RateLimiter

__all__ = ["RateLimiter"]
