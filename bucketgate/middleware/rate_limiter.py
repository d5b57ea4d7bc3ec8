import math
import time
import logging
import threading
from typing import Dict, Any, Optional, Iterable
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from ..clock import Clock, SystemClock
from ..config import LimiterSettings, RuleSettings
from ..ratelimit import TokenBucketLimiter

logger = logging.getLogger(__name__)

class RateLimitRule:
    """A named token bucket applied to requests under a path prefix"""

    def __init__(self, name: str, burst: int, milliseconds_per_token: int,
                 path_prefix: str = "/api/", clock: Optional[Clock] = None):
        self.name = name
        self.path_prefix = path_prefix
        self.limiter = TokenBucketLimiter(clock, burst, milliseconds_per_token)

    @classmethod
    def from_settings(cls, settings: RuleSettings, clock: Optional[Clock] = None) -> "RateLimitRule":
        return cls(settings.name, settings.burst, settings.milliseconds_per_token, settings.path_prefix, clock)

    @property
    def burst(self) -> int:
        return self.limiter.burst

    @property
    def milliseconds_per_token(self) -> int:
        return self.limiter.milliseconds_per_token

    @property
    def retry_after_seconds(self) -> int:
        # time until the next token, rounded up to whole seconds for Retry-After
        return max(1, math.ceil(self.milliseconds_per_token / 1000))

    def applies_to(self, path: str) -> bool:
        return path.startswith(self.path_prefix)

    def __repr__(self):
        return f"RateLimitRule({self.name}: burst {self.burst}, 1 token/{self.milliseconds_per_token}ms on {self.path_prefix})"

class RateLimitMiddleware:
    """FastAPI middleware that throttles each client with token buckets"""

    def __init__(self, rules: Optional[Iterable[RateLimitRule]] = None, clock: Optional[Clock] = None,
                 eviction_interval_seconds: int = 300):
        self.clock = clock if clock is not None else SystemClock()
        if rules is None:
            rules = [RateLimitRule("api", 20, 1000, "/api/", self.clock)]
        self.rules: Dict[str, RateLimitRule] = {rule.name: rule for rule in rules}
        self._eviction_interval = eviction_interval_seconds
        self._last_eviction = time.monotonic()
        self._eviction_lock = threading.Lock()

        logger.info(f"Rate limiter initialized with {len(self.rules)} rules: {list(self.rules.values())}")

    @classmethod
    def from_settings(cls, settings: LimiterSettings, clock: Optional[Clock] = None) -> "RateLimitMiddleware":
        clock = clock if clock is not None else SystemClock()
        rules = [RateLimitRule.from_settings(rule, clock) for rule in settings.rules]
        return cls(rules, clock, settings.eviction_interval_seconds)

    async def __call__(self, request: Request, call_next):
        """Process request with rate limiting"""

        if self._should_skip_rate_limit(request):
            return await call_next(request)

        applied_rule = None
        for rule in self._get_applicable_rules(request):
            client_key = self._get_client_key(request, rule.name)

            if not rule.limiter.try_consume(client_key):
                logger.warning(f"Rate limit exceeded for {client_key}")
                return self._create_rate_limit_response(rule)

            # Report the rule with the smallest burst in the headers
            if applied_rule is None or rule.burst < applied_rule.burst:
                applied_rule = rule

        self._evict_idle_buckets()

        response = await call_next(request)

        if applied_rule is not None:
            self._add_rate_limit_headers(response, applied_rule)

        return response

    def _get_client_key(self, request: Request, rule_name: str) -> str:
        """Key a client's bucket by rule and client IP"""
        return f"{rule_name}:{self._get_client_ip(request)}"

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP with proxy support"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

        return request.client.host if request.client else "unknown"

    def _should_skip_rate_limit(self, request: Request) -> bool:
        """Check if rate limiting should be skipped"""
        path = request.url.path

        # Skip for OpenAPI documentation and static assets
        skip_paths = ["/docs", "/openapi.json", "/redoc", "/favicon.ico"]
        return any(path.startswith(skip_path) for skip_path in skip_paths)

    def _get_applicable_rules(self, request: Request):
        path = request.url.path
        return [rule for rule in self.rules.values() if rule.applies_to(path)]

    def _evict_idle_buckets(self):
        """Sweep idle buckets once per eviction interval"""
        if not self._eviction_interval:
            return

        now = time.monotonic()
        if now - self._last_eviction < self._eviction_interval:
            return

        # Only one request pays for the sweep
        if not self._eviction_lock.acquire(blocking=False):
            return
        try:
            self._last_eviction = now
            for rule in self.rules.values():
                evicted = rule.limiter.evict_idle()
                if evicted:
                    logger.info(f"Evicted {evicted} idle buckets from rule {rule.name}")
        finally:
            self._eviction_lock.release()

    def _create_rate_limit_response(self, rule: RateLimitRule) -> JSONResponse:
        """Create HTTP 429 response for rate limit exceeded"""
        headers = {
            "X-RateLimit-Limit": str(rule.burst),
            "X-RateLimit-Rule": rule.name,
            "Retry-After": str(rule.retry_after_seconds),
        }

        return JSONResponse(
            status_code=429,
            content={
                "error": "Rate limit exceeded",
                "message": f"Too many requests. Burst of {rule.burst}, one more request every {rule.milliseconds_per_token}ms.",
                "rule": rule.name,
                "retry_after": rule.retry_after_seconds,
            },
            headers=headers
        )

    def _add_rate_limit_headers(self, response: Response, rule: RateLimitRule):
        response.headers["X-RateLimit-Limit"] = str(rule.burst)
        response.headers["X-RateLimit-Rule"] = rule.name

    def set_clock(self, clock: Clock):
        """Swap the time source of every rule"""
        self.clock = clock
        for rule in self.rules.values():
            rule.limiter.set_clock(clock)

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics"""
        return {
            "limiter": {
                "total_keys": sum(len(rule.limiter) for rule in self.rules.values()),
                "eviction_interval": self._eviction_interval,
            },
            "rules": {name: {"burst": rule.burst,
                             "milliseconds_per_token": rule.milliseconds_per_token,
                             "tracked_keys": len(rule.limiter)}
                      for name, rule in self.rules.items()}
        }

    def clear_limits(self):
        """Clear all rate limits (useful for testing)"""
        for rule in self.rules.values():
            rule.limiter.clear()
