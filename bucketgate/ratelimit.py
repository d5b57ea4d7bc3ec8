import logging
import threading
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .errors import InvalidConfiguration, InvalidKey

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token count and last check time for one key, guarded by a single lock"""

    __slots__ = ("tokens", "last_checked_millis", "retired", "lock")

    def __init__(self, tokens: int, last_checked_millis: int):
        self.tokens = tokens
        self.last_checked_millis = last_checked_millis
        # set once the bucket has been dropped from the store
        self.retired = False
        self.lock = threading.Lock()

    def consume(self, clock: Clock, burst: int, milliseconds_per_token: int) -> Optional[bool]:
        """
        Refill from elapsed time and take one token if any is available.

        Returns None when the bucket was evicted while the caller waited for
        the lock, so the caller has to look the key up again.
        """
        with self.lock:
            if self.retired:
                return None
            now = clock.millis()
            elapsed = max(now - self.last_checked_millis, 0)
            refill = min(elapsed // milliseconds_per_token, burst)
            available = min(self.tokens + refill, burst)
            if available > 0:
                self.tokens = available - 1
                self.last_checked_millis = now
                return True
            # denied calls leave the refill anchor where it was
            return False

    def __repr__(self):
        return f"TokenBucket(tokens={self.tokens}, last_checked_millis={self.last_checked_millis})"


class TokenBucketLimiter:
    """
    Per-key rate limiter using the token bucket algorithm.

    Every key gets its own bucket holding up to ``burst`` tokens, starting
    full. One token is added every ``milliseconds_per_token`` and tokens beyond
    ``burst`` are lost. ``try_consume`` takes a token and returns True, or
    returns False without touching the bucket when it is empty.

    Safe to share between threads: each bucket is updated under its own lock
    and the key store lock is only held for lookups and inserts.
    """

    def __init__(self, clock: Optional[Clock] = None, burst: int = 20, milliseconds_per_token: int = 1000):
        self._burst = self._validate_setting("burst", burst)
        self._milliseconds_per_token = self._validate_setting("milliseconds_per_token", milliseconds_per_token)
        self._clock = clock if clock is not None else SystemClock()
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _validate_setting(name: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")
        if value <= 0:
            raise InvalidConfiguration(f"{name} must be positive, got {value}")
        return value

    @property
    def burst(self) -> int:
        return self._burst

    @property
    def milliseconds_per_token(self) -> int:
        return self._milliseconds_per_token

    @property
    def clock(self) -> Clock:
        return self._clock

    @clock.setter
    def clock(self, clock: Clock):
        self._clock = clock

    def get_clock(self) -> Clock:
        return self._clock

    def set_clock(self, clock: Clock):
        """Swap the time source. Existing bucket timestamps are kept as they are."""
        self._clock = clock

    def try_consume(self, key: str) -> bool:
        """
        Take one token from the bucket for ``key``.

        Args:
            key: identifier of the rate limited resource, e.g. client IP

        Returns:
            True if a token was consumed, False if the bucket is empty

        Raises:
            InvalidKey: if key is None, not a string or empty
        """
        if key is None:
            raise InvalidKey("Null key resource identifier not supported")
        if not isinstance(key, str):
            raise InvalidKey(f"Key must be a string, got {type(key).__name__}")
        if not key:
            raise InvalidKey("Empty key resource identifier not supported")

        while True:
            with self._lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    # a new bucket starts at burst and pays for this call
                    self._buckets[key] = TokenBucket(self._burst - 1, self._clock.millis())
                    return True
            granted = bucket.consume(self._clock, self._burst, self._milliseconds_per_token)
            if granted is not None:
                return granted

    def evict_idle(self) -> int:
        """
        Drop buckets that have been idle long enough to be full again.

        A bucket untouched for ``burst * milliseconds_per_token`` would refill
        to ``burst`` on its next call, which is the state a new bucket starts
        in, so evicting it never changes a later decision.
        """
        horizon = self._burst * self._milliseconds_per_token
        now = self._clock.millis()
        evicted = 0
        with self._lock:
            for key, bucket in list(self._buckets.items()):
                with bucket.lock:
                    if now - bucket.last_checked_millis >= horizon:
                        bucket.retired = True
                        del self._buckets[key]
                        evicted += 1
        if evicted:
            logger.debug(f"Evicted {evicted} idle buckets, {len(self)} remaining")
        return evicted

    def clear(self):
        """Forget every bucket"""
        with self._lock:
            for bucket in self._buckets.values():
                with bucket.lock:
                    bucket.retired = True
            self._buckets.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_keys": len(self),
            "burst": self._burst,
            "milliseconds_per_token": self._milliseconds_per_token,
        }

    def __len__(self):
        with self._lock:
            return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._buckets

    def __repr__(self):
        return (
            f"TokenBucketLimiter(burst={self._burst}, "
            f"milliseconds_per_token={self._milliseconds_per_token}, clock={self._clock!r})"
        )
