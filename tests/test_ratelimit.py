import pytest

from paylink.common import ratelimit
from paylink.common.errors import RateLimited
from paylink.common.ratelimit import TokenBucketLimiter


@pytest.fixture
def clock(monkeypatch):
    now = {"t": 1_000_000.0}
    monkeypatch.setattr(ratelimit, "time", lambda: now["t"])
    return now


def test_bucket_allows_limit_then_rejects(clock, fake_redis):
    limiter = TokenBucketLimiter(fake_redis, limit_per_minute=3)
    for _ in range(3):
        limiter.check("owner-1")
    with pytest.raises(RateLimited) as excinfo:
        limiter.check("owner-1")
    assert excinfo.value.retryable is True
    assert fake_redis.ttls["tokenbucket:links:owner-1"] == 120


def test_buckets_are_per_owner(clock, fake_redis):
    limiter = TokenBucketLimiter(fake_redis, limit_per_minute=1)
    limiter.check("owner-1")
    limiter.check("owner-2")
    with pytest.raises(RateLimited):
        limiter.check("owner-1")


def test_bucket_refills_over_time(clock, fake_redis):
    limiter = TokenBucketLimiter(fake_redis, limit_per_minute=60)
    for _ in range(60):
        limiter.check("owner-1")
    with pytest.raises(RateLimited):
        limiter.check("owner-1")
    clock["t"] += 1.0
    limiter.check("owner-1")
