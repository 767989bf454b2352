import math
import threading
import time
import uuid
from collections import OrderedDict, deque
from typing import Deque, Dict, Optional, TypedDict

import redis
from loguru import logger

from tools import config


class RateLimitResult(TypedDict):
    allowed: bool
    limit: int
    remaining: int
    reset: float     # epoch seconds when the oldest counted request leaves the window
    window: int


class MemoryRateLimitBackend:
    """Sliding-window log per key, held in a bounded LRU map.

    Stale keys are evicted as they are touched and the map never holds more than
    ``max_keys`` entries, so a flood of distinct client IPs cannot grow it without bound.
    """

    def __init__(self, max_keys: int = 10000):
        self.max_keys = max_keys
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window: int, now: float) -> RateLimitResult:
        cutoff = now - window
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
            self._hits.move_to_end(key)

            while hits and hits[0] <= cutoff:
                hits.popleft()

            allowed = len(hits) < limit
            if allowed:
                hits.append(now)

            reset = (hits[0] + window) if hits else now + window
            remaining = max(0, limit - len(hits))
            self._evict(cutoff)

        return {"allowed": allowed, "limit": limit, "remaining": remaining, "reset": reset, "window": window}

    def _evict(self, cutoff: float) -> None:
        while len(self._hits) > self.max_keys:
            self._hits.popitem(last=False)
        # oldest-touched keys sit at the front; drop them while they are empty or stale
        for key in list(self._hits.keys())[:32]:
            hits = self._hits[key]
            if not hits or hits[-1] <= cutoff:
                del self._hits[key]

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class RedisRateLimitBackend:
    """Sliding-window log in a sorted set, updated in one MULTI/EXEC round trip."""

    def __init__(self, client: "redis.Redis", prefix: str = "lw:rl"):
        self.r = client
        self.prefix = prefix

    def hit(self, key: str, limit: int, window: int, now: float) -> RateLimitResult:
        redis_key = f"{self.prefix}:{key}"
        member = f"{now}:{uuid.uuid4().hex}"
        pipe = self.r.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now - window)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, window)
        _, _, count, oldest, _ = pipe.execute()

        allowed = count <= limit
        if not allowed:
            # rejected requests do not consume capacity
            self.r.zrem(redis_key, member)
            count -= 1

        reset = (oldest[0][1] + window) if oldest else now + window
        return {"allowed": allowed, "limit": limit, "remaining": max(0, limit - count), "reset": reset, "window": window}

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            for k in self.r.scan_iter(f"{self.prefix}:*"):
                self.r.delete(k)
        else:
            self.r.delete(f"{self.prefix}:{key}")


class RateLimiter:
    """Per-platform request limiter keyed by client identity."""

    def __init__(self, limit: int, window: int, backend=None, name: str = "webhook"):
        self.limit = limit
        self.window = window
        self.backend = backend or MemoryRateLimitBackend()
        self.name = name

    def check(self, key: str, now: Optional[float] = None) -> RateLimitResult:
        now = time.time() if now is None else now
        result = self.backend.hit(key, self.limit, self.window, now)
        if not result["allowed"]:
            logger.warning(f"Rate limit exceeded for {self.name} webhook: {key}")
        return result

    def headers(self, result: RateLimitResult, now: Optional[float] = None) -> Dict[str, str]:
        now = time.time() if now is None else now
        headers = {
            "X-RateLimit-Limit": str(result["limit"]),
            "X-RateLimit-Remaining": str(result["remaining"]),
            "X-RateLimit-Reset": str(math.ceil(result["reset"])),
            "X-RateLimit-Window": str(result["window"]),
        }
        if not result["allowed"]:
            headers["Retry-After"] = str(max(0, math.ceil(result["reset"] - now)))
        return headers

    def reset(self, key: Optional[str] = None) -> None:
        self.backend.reset(key)


_limiters: Dict[str, RateLimiter] = {}
_backend = None
_limiters_lock = threading.Lock()


def _build_backend():
    if config.store_backend() == "memory":
        return MemoryRateLimitBackend()
    try:
        client = redis.from_url(config.redis_url(), decode_responses=True)
        client.ping()
        return RedisRateLimitBackend(client)
    except Exception as e:
        logger.error(f"Redis rate limit backend unavailable: {e}")
        return MemoryRateLimitBackend()


def get_rate_limiter(platform: str, default_limit: int) -> RateLimiter:
    """Process-wide limiter for a platform, created on first use."""
    global _backend
    with _limiters_lock:
        limiter = _limiters.get(platform)
        if limiter is None:
            if _backend is None:
                _backend = _build_backend()
            limiter = RateLimiter(
                limit=config.max_requests_per_window(default_limit),
                window=config.rate_limit_window_seconds(),
                backend=_backend,
                name=platform,
            )
            _limiters[platform] = limiter
        return limiter


def reset_rate_limiters() -> None:
    global _backend
    with _limiters_lock:
        _limiters.clear()
        _backend = None
