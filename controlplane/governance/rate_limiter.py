"""
Gate Rate Limiter

Per-(actor, action) counters for the decision gate. Every ``hit`` is an
atomic increment-and-check:

- ``InMemoryRateLimitStore``: sliding window, one process, guarded by a lock
- ``RedisRateLimitStore``: fixed window shared across processes via
  INCR + EXPIRE in a single pipeline

Usage:
    from controlplane.governance.rate_limiter import create_rate_limit_store

    store = create_rate_limit_store(settings)
    result = store.hit("gate:alice:publish", limit=60, window_sec=60)
    if not result.allowed:
        ...
"""

import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import redis

logger = logging.getLogger(__name__)


class RateLimitResult:
    """Result of a rate limit check."""

    def __init__(
        self,
        allowed: bool,
        requests_remaining: int,
        reset_time: int,
        retry_after: Optional[float] = None,
    ):
        self.allowed = allowed
        self.requests_remaining = requests_remaining
        self.reset_time = reset_time
        self.retry_after = retry_after


@dataclass
class SlidingWindowCounter:
    """Sliding window rate limiter counter."""

    window_size_seconds: int
    max_requests: int
    requests: List[float] = field(default_factory=list)

    def add_request(self, now: Optional[float] = None) -> bool:
        """Add a request and return True if allowed, False if rate limited."""
        now = time.time() if now is None else now
        cutoff = now - self.window_size_seconds

        self.requests = [t for t in self.requests if t > cutoff]

        if len(self.requests) < self.max_requests:
            self.requests.append(now)
            return True
        return False

    def get_wait_time(self, now: Optional[float] = None) -> float:
        """Get seconds to wait before next request is allowed."""
        if not self.requests:
            return 0

        now = time.time() if now is None else now
        cutoff = now - self.window_size_seconds
        self.requests = [t for t in self.requests if t > cutoff]

        if len(self.requests) < self.max_requests:
            return 0

        # Wait until oldest request expires
        oldest = min(self.requests)
        return max(0, oldest + self.window_size_seconds - now)


class RateLimitStore:
    """Base class for rate limit stores"""

    def hit(self, key: str, limit: int, window_sec: int) -> RateLimitResult:
        """Count one request against ``key`` and report whether it is allowed"""
        raise NotImplementedError

    def reset(self, key: Optional[str] = None) -> None:
        raise NotImplementedError


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local sliding window counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, SlidingWindowCounter] = {}

    def hit(self, key: str, limit: int, window_sec: int) -> RateLimitResult:
        now = time.time()
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or counter.max_requests != limit or counter.window_size_seconds != window_sec:
                counter = SlidingWindowCounter(window_size_seconds=window_sec, max_requests=limit)
                self._counters[key] = counter

            allowed = counter.add_request(now)
            remaining = max(0, limit - len(counter.requests))
            reset_time = int(min(counter.requests) + window_sec) if counter.requests else int(now)
            retry_after = None if allowed else counter.get_wait_time(now)

        return RateLimitResult(
            allowed=allowed,
            requests_remaining=remaining,
            reset_time=reset_time,
            retry_after=retry_after,
        )

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._counters.clear()
            else:
                self._counters.pop(key, None)


class RedisRateLimitStore(RateLimitStore):
    """Fixed-window counters in Redis, shared by every gate instance."""

    def __init__(self, client: "redis.Redis", key_prefix: str = "controlplane:rl:"):
        self.redis = client
        self.key_prefix = key_prefix

    def _window_key(self, key: str, window_sec: int, now: float) -> str:
        window = int(now // window_sec)
        return f"{self.key_prefix}{key}:{window}"

    def hit(self, key: str, limit: int, window_sec: int) -> RateLimitResult:
        now = time.time()
        redis_key = self._window_key(key, window_sec, now)

        pipe = self.redis.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_sec + 1)
        count, _ = pipe.execute()
        count = int(count)

        reset_time = (int(now // window_sec) + 1) * window_sec
        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            requests_remaining=max(0, limit - count),
            reset_time=reset_time,
            retry_after=None if allowed else max(0.0, reset_time - now),
        )

    def reset(self, key: Optional[str] = None) -> None:
        pattern = f"{self.key_prefix}{key}:*" if key else f"{self.key_prefix}*"
        for redis_key in self.redis.scan_iter(match=pattern):
            self.redis.delete(redis_key)


def create_rate_limit_store(settings) -> RateLimitStore:
    """Build the store selected by ``RATE_LIMIT_BACKEND``."""
    if settings.RATE_LIMIT_BACKEND == "redis":
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("Using Redis rate limit store for decision gate")
        return RedisRateLimitStore(client)
    return InMemoryRateLimitStore()
