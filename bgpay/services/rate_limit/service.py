"""Sliding-window rate limiting per (merchant id, client IP).

The limiter is an explicit resource built once at startup and injected into
the gateway. Both backends perform eviction, the capacity check and the
insert as one atomic step per key.
"""

import threading
import time
from collections import deque
from uuid import uuid4

import redis

from bgpay.common.errors import RateLimitExceeded

# KEYS[1] = window key; ARGV = now, window, limit, member.
# Returns {admitted, oldest_score}; scores go back as strings since Redis truncates Lua floats.
_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, oldest[2] or tostring(now)}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
return {1, tostring(now)}
"""


def window_key(merchant_id: str, client_ip: str) -> str:
    return f"ratelimit:{merchant_id}:{client_ip}"


class RateLimiter:
    """Interface shared by every backend."""

    def __init__(self, window_seconds: float = 60.0, max_requests: int = 100) -> None:
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError("window_seconds and max_requests must be positive")
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)

    def hit(self, merchant_id: str, client_ip: str, now: float | None = None) -> None:
        """Admit one request or raise `RateLimitExceeded`."""

        raise NotImplementedError

    def _retry_after(self, oldest: float, now: float) -> float:
        return max(0.0, oldest + self.window_seconds - now)


class InMemoryRateLimiter(RateLimiter):
    """Process-local backend for single-worker deployments and tests."""

    def __init__(self, window_seconds: float = 60.0, max_requests: int = 100) -> None:
        super().__init__(window_seconds, max_requests)
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep: float | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, cutoff: float) -> None:
        """Evict expired timestamps from every key and drop keys left empty. Caller holds the lock."""

        for key in list(self._windows):
            timestamps = self._windows[key]
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if not timestamps:
                del self._windows[key]

    def hit(self, merchant_id: str, client_ip: str, now: float | None = None) -> None:
        now = time.time() if now is None else now
        key = window_key(merchant_id, client_ip)
        with self._lock:
            cutoff = now - self.window_seconds
            # At most one full sweep per window length.
            if self._last_sweep is None or now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            timestamps = self._windows.setdefault(key, deque())
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                raise RateLimitExceeded(self._retry_after(timestamps[0], now))
            timestamps.append(now)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._last_sweep = None


class RedisRateLimiter(RateLimiter):
    """Shared backend: one sorted set per key, updated by a Lua script."""

    def __init__(self, client: redis.Redis, window_seconds: float = 60.0, max_requests: int = 100) -> None:
        super().__init__(window_seconds, max_requests)
        self.client = client
        self._script = client.register_script(_SLIDING_WINDOW_LUA)

    def hit(self, merchant_id: str, client_ip: str, now: float | None = None) -> None:
        now = time.time() if now is None else now
        admitted, score = self._script(
            keys=[window_key(merchant_id, client_ip)],
            args=[now, self.window_seconds, self.max_requests, f"{now}:{uuid4().hex}"],
        )
        if int(admitted) != 1:
            raise RateLimitExceeded(self._retry_after(float(score), now))


def build_rate_limiter(settings) -> RateLimiter:
    """Construct the configured backend."""

    if settings.rate_limit_backend == "memory":
        return InMemoryRateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max)
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return RedisRateLimiter(client, settings.rate_limit_window_seconds, settings.rate_limit_max)
