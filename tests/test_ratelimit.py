import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from bucketgate.clock import FixedClock, offset
from bucketgate.errors import InvalidConfiguration, InvalidKey, RateLimiterError
from bucketgate.ratelimit import TokenBucketLimiter

KEY = "127.0.0.1"

class TestTokenBucketLimiter:
    """Token bucket decisions against a frozen clock"""

    def test_burst_of_two(self, limiter):
        """Two requests fit in a burst of 2, the rest are denied"""
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False
        assert limiter.try_consume(KEY) is False

    def test_first_call_always_succeeds(self, fixed_clock):
        """A new key is granted even with a burst of one"""
        limiter = TokenBucketLimiter(fixed_clock, 1, 60_000)
        for i in range(20):
            assert limiter.try_consume(f"client-{i}") is True

    def test_burst_exhausted_after_burst_calls(self, fixed_clock):
        """Exactly burst calls succeed when no time passes"""
        limiter = TokenBucketLimiter(fixed_clock, 7, 1000)
        results = [limiter.try_consume(KEY) for _ in range(10)]
        assert results == [True] * 7 + [False] * 3

    def test_two_keys(self, fixed_clock):
        """Each key gets its own bucket"""
        limiter = TokenBucketLimiter(fixed_clock, 1, 1000)
        assert limiter.try_consume("127.0.0.1") is True
        assert limiter.try_consume("127.0.0.1") is False
        assert limiter.try_consume("10.0.0.1") is True
        assert limiter.try_consume("10.0.0.1") is False

    def test_exhausting_one_key_leaves_others_alone(self, limiter):
        """Draining a bucket does not change any other bucket"""
        limiter.try_consume("other")
        before = limiter._buckets["other"].tokens

        while limiter.try_consume(KEY):
            pass

        assert limiter._buckets["other"].tokens == before
        assert limiter.try_consume("other") is True

    def test_refill_over_time(self, limiter):
        """Tokens come back one per interval"""
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

        limiter.set_clock(offset(limiter.get_clock(), seconds=1))
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

        limiter.set_clock(offset(limiter.get_clock(), seconds=2))
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

    def test_tokens_discarded_beyond_burst(self, limiter):
        """Waiting three intervals only refills up to the burst"""
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

        limiter.set_clock(offset(limiter.get_clock(), seconds=3))
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

    def test_leftover_tokens_plus_refill_capped_at_burst(self, limiter):
        """Unused tokens and refilled tokens together never exceed the burst"""
        assert limiter.try_consume(KEY) is True
        assert limiter._buckets[KEY].tokens == 1

        limiter.set_clock(offset(limiter.get_clock(), seconds=5))
        assert limiter.try_consume(KEY) is True
        assert limiter._buckets[KEY].tokens == 1
        assert limiter.try_consume(KEY) is True
        assert limiter.try_consume(KEY) is False

    def test_partial_interval_does_not_refill(self, limiter, fixed_clock):
        """Refill uses whole intervals only"""
        limiter.try_consume(KEY)
        limiter.try_consume(KEY)

        limiter.set_clock(offset(fixed_clock, millis=999))
        assert limiter.try_consume(KEY) is False

        limiter.set_clock(offset(fixed_clock, millis=1000))
        assert limiter.try_consume(KEY) is True

    def test_denial_keeps_last_checked_time(self, fixed_clock):
        """A denied call does not move the refill anchor"""
        limiter = TokenBucketLimiter(fixed_clock, 1, 1000)
        assert limiter.try_consume(KEY) is True
        anchor = limiter._buckets[KEY].last_checked_millis
        assert anchor == fixed_clock.millis()

        limiter.set_clock(offset(fixed_clock, millis=400))
        assert limiter.try_consume(KEY) is False
        limiter.set_clock(offset(fixed_clock, millis=900))
        assert limiter.try_consume(KEY) is False
        assert limiter._buckets[KEY].last_checked_millis == anchor
        assert limiter._buckets[KEY].tokens == 0

        # measured from the last grant, not from the denials
        limiter.set_clock(offset(fixed_clock, millis=1000))
        assert limiter.try_consume(KEY) is True
        assert limiter._buckets[KEY].last_checked_millis == anchor + 1000

    def test_clock_moving_backward_does_not_refill(self, limiter, fixed_clock):
        """Negative elapsed time adds no tokens"""
        limiter.try_consume(KEY)
        limiter.try_consume(KEY)

        limiter.set_clock(offset(fixed_clock, seconds=-10))
        assert limiter.try_consume(KEY) is False
        assert limiter._buckets[KEY].tokens == 0

    def test_clock_swap_keeps_timestamps(self, limiter, fixed_clock):
        """Replacing the clock does not rewrite existing buckets"""
        limiter.try_consume(KEY)
        later = FixedClock(fixed_clock.millis() + 60_000)

        limiter.clock = later

        assert limiter.get_clock() is later
        assert limiter._buckets[KEY].last_checked_millis == fixed_clock.millis()

class TestInputValidation:
    """Usage errors are raised, never reported as a denial"""

    def test_empty_key(self, limiter):
        """Empty key raises InvalidKey"""
        with pytest.raises(InvalidKey):
            limiter.try_consume("")
        assert len(limiter) == 0

    def test_null_key(self, limiter):
        """None key raises InvalidKey"""
        with pytest.raises(InvalidKey):
            limiter.try_consume(None)
        assert len(limiter) == 0

    def test_non_string_key(self, limiter):
        with pytest.raises(InvalidKey):
            limiter.try_consume(42)

    def test_invalid_key_does_not_touch_existing_buckets(self, limiter):
        """Rejected keys leave the other buckets as they were"""
        limiter.try_consume(KEY)
        with pytest.raises(InvalidKey):
            limiter.try_consume("")
        assert limiter._buckets[KEY].tokens == 1
        assert len(limiter) == 1

    def test_errors_are_value_errors(self):
        assert issubclass(InvalidKey, RateLimiterError)
        assert issubclass(InvalidConfiguration, ValueError)

    @pytest.mark.parametrize("burst, milliseconds_per_token", [
        (0, 1000),
        (-1, 1000),
        (2, 0),
        (2, -5),
        (2.5, 1000),
        (2, "1000"),
        (True, 1000),
    ])
    def test_invalid_configuration(self, fixed_clock, burst, milliseconds_per_token):
        """Non-positive or non-integer settings are rejected at construction"""
        with pytest.raises(InvalidConfiguration):
            TokenBucketLimiter(fixed_clock, burst, milliseconds_per_token)

    def test_defaults_to_system_clock(self):
        limiter = TokenBucketLimiter(burst=1, milliseconds_per_token=1000)
        assert limiter.get_clock().millis() > 0
        assert limiter.try_consume(KEY) is True

class TestConcurrency:
    """Threads sharing one limiter"""

    def test_same_key_never_over_granted(self, fixed_clock):
        """Concurrent callers on one key get exactly burst tokens"""
        burst = 50
        limiter = TokenBucketLimiter(fixed_clock, burst, 1000)
        workers = 8
        calls_per_worker = 100
        barrier = threading.Barrier(workers)

        def hammer():
            barrier.wait()
            return sum(limiter.try_consume(KEY) for _ in range(calls_per_worker))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            granted = sum(pool.map(lambda _: hammer(), range(workers)))

        assert granted == burst
        assert limiter._buckets[KEY].tokens == 0

    def test_concurrent_new_keys(self, fixed_clock):
        """Many threads creating keys at once all get their first token"""
        limiter = TokenBucketLimiter(fixed_clock, 3, 1000)
        keys = [f"10.0.{i // 256}.{i % 256}" for i in range(500)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(limiter.try_consume, keys))

        assert all(results)
        assert len(limiter) == len(keys)
        assert all(limiter._buckets[key].tokens == 2 for key in keys)

class TestEviction:
    """Dropping buckets that are full again"""

    def test_evicts_only_after_full_refill(self, limiter, fixed_clock):
        """Buckets younger than burst * interval are kept"""
        limiter.try_consume(KEY)
        limiter.try_consume("busy")

        limiter.set_clock(offset(fixed_clock, millis=1999))
        assert limiter.evict_idle() == 0
        assert KEY in limiter

        limiter.set_clock(offset(fixed_clock, millis=2000))
        limiter.try_consume("busy")
        assert limiter.evict_idle() == 1
        assert KEY not in limiter
        assert "busy" in limiter

    def test_eviction_does_not_change_decisions(self, fixed_clock):
        """An evicted key behaves exactly like one that was kept"""
        kept = TokenBucketLimiter(fixed_clock, 3, 1000)
        swept = TokenBucketLimiter(fixed_clock, 3, 1000)
        for limiter in (kept, swept):
            while limiter.try_consume(KEY):
                pass

        later = offset(fixed_clock, seconds=3)
        kept.set_clock(later)
        swept.set_clock(later)
        assert swept.evict_idle() == 1

        assert [kept.try_consume(KEY) for _ in range(5)] == [swept.try_consume(KEY) for _ in range(5)]

    def test_retired_bucket_forces_lookup(self, limiter, fixed_clock):
        """A caller holding an evicted bucket retries against the store"""
        limiter.try_consume(KEY)
        stale = limiter._buckets[KEY]

        limiter.set_clock(offset(fixed_clock, seconds=2))
        limiter.evict_idle()

        assert stale.consume(limiter.get_clock(), limiter.burst, limiter.milliseconds_per_token) is None
        assert limiter.try_consume(KEY) is True
        assert limiter._buckets[KEY] is not stale
        assert limiter._buckets[KEY].tokens == 1

    def test_clear_and_stats(self, limiter):
        limiter.try_consume("a")
        limiter.try_consume("b")

        assert limiter.get_stats() == {"total_keys": 2, "burst": 2, "milliseconds_per_token": 1000}

        limiter.clear()
        assert len(limiter) == 0
        assert limiter.try_consume("a") is True
