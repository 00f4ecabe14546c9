"""Redis token bucket guarding link creation.

One bucket per owner; capacity and refill rate both equal the configured limit
per minute. The limiter is constructed once and injected into the orchestrator.
"""

from time import time

import redis

from paylink.common.errors import RateLimited
from paylink.common.metrics import rate_limited_total


class TokenBucketLimiter:
    def __init__(self, client: "redis.Redis", limit_per_minute: int, service_name: str = "paylink") -> None:
        self.client = client
        self.limit_per_minute = limit_per_minute
        self.service_name = service_name

    @classmethod
    def from_url(cls, url: str, limit_per_minute: int, service_name: str = "paylink") -> "TokenBucketLimiter":
        return cls(redis.Redis.from_url(url, decode_responses=True), limit_per_minute, service_name)

    def check(self, owner_id: str) -> None:
        """Take one token for `owner_id` or raise `RateLimited`."""

        key = f"tokenbucket:links:{owner_id}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        values = self.client.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.client.expire(key, 120)
        if not allowed:
            rate_limited_total.labels(service=self.service_name).inc()
            raise RateLimited("rate limit exceeded", owner_id=owner_id)
