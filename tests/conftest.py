import pytest

from bucketgate.clock import FixedClock
from bucketgate.ratelimit import TokenBucketLimiter

START_MILLIS = 1_700_000_000_000

@pytest.fixture
def fixed_clock():
    return FixedClock(START_MILLIS)

@pytest.fixture
def limiter(fixed_clock):
    """burst=2, one token per second, time frozen"""
    return TokenBucketLimiter(fixed_clock, 2, 1000)
