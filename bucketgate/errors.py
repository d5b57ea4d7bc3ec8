class RateLimiterError(ValueError):
    """Base class for rate limiter usage errors"""


class InvalidKey(RateLimiterError):
    """Raised when a rate limit key is missing or empty"""


class InvalidConfiguration(RateLimiterError):
    """Raised when burst or refill settings are not positive integers"""
