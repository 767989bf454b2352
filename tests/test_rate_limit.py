import os
import sys
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tools.rate_limit import (
    MemoryRateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
    get_rate_limiter,
    reset_rate_limiters,
)

NOW = 1_700_000_000.0


class TestSlidingWindow:
    """Sliding-window limiter over the in-memory backend."""

    def setup_method(self):
        self.limiter = RateLimiter(limit=3, window=60, name="test")

    def test_allows_up_to_limit(self):
        results = [self.limiter.check("ip", now=NOW + i) for i in range(4)]

        assert [r["allowed"] for r in results] == [True, True, True, False]
        assert [r["remaining"] for r in results] == [2, 1, 0, 0]

    def test_window_slides(self):
        for i in range(3):
            self.limiter.check("ip", now=NOW + i)

        assert not self.limiter.check("ip", now=NOW + 59)["allowed"]
        # the first hit has left the window
        assert self.limiter.check("ip", now=NOW + 60.5)["allowed"]

    def test_rejected_requests_do_not_consume_capacity(self):
        for i in range(3):
            self.limiter.check("ip", now=NOW)
        for _ in range(10):
            self.limiter.check("ip", now=NOW + 30)

        # only the three accepted hits were counted, so they all expire together
        assert self.limiter.check("ip", now=NOW + 61)["remaining"] == 2

    def test_headers(self):
        allowed = self.limiter.check("ip", now=NOW)
        headers = self.limiter.headers(allowed, now=NOW)

        assert headers["X-RateLimit-Limit"] == "3"
        assert headers["X-RateLimit-Remaining"] == "2"
        assert headers["X-RateLimit-Reset"] == str(int(NOW + 60))
        assert headers["X-RateLimit-Window"] == "60"
        assert "Retry-After" not in headers

    def test_retry_after_on_rejection(self):
        for _ in range(3):
            self.limiter.check("ip", now=NOW)
        rejected = self.limiter.check("ip", now=NOW + 20)

        assert self.limiter.headers(rejected, now=NOW + 20)["Retry-After"] == "40"

    def test_reset(self):
        for _ in range(3):
            self.limiter.check("ip", now=NOW)
        self.limiter.reset("ip")
        assert self.limiter.check("ip", now=NOW)["allowed"]


class TestMemoryBackendBounds:
    def test_key_count_is_bounded(self):
        backend = MemoryRateLimitBackend(max_keys=5)
        for i in range(50):
            backend.hit(f"ip-{i}", limit=10, window=60, now=NOW)

        assert len(backend._hits) <= 5
        # most recent keys survive
        assert "ip-49" in backend._hits

    def test_stale_keys_are_evicted(self):
        backend = MemoryRateLimitBackend()
        backend.hit("old", limit=10, window=60, now=NOW)
        backend.hit("new", limit=10, window=60, now=NOW + 120)

        assert "old" not in backend._hits
        assert "new" in backend._hits


class TestRedisBackend:
    """Sorted-set sliding window driven through a mocked Redis client."""

    def setup_method(self):
        self.client = MagicMock()
        self.pipe = MagicMock()
        self.client.pipeline.return_value = self.pipe
        self.backend = RedisRateLimitBackend(self.client, prefix="test:rl")

    def test_allowed_hit(self):
        self.pipe.execute.return_value = [0, 1, 1, [("m", NOW)], True]

        result = self.backend.hit("ip", limit=2, window=60, now=NOW)

        assert result["allowed"] is True
        assert result["remaining"] == 1
        assert result["reset"] == NOW + 60
        self.pipe.zremrangebyscore.assert_called_once_with("test:rl:ip", 0, NOW - 60)
        self.client.zrem.assert_not_called()

    def test_rejected_hit_is_removed(self):
        self.pipe.execute.return_value = [0, 1, 3, [("m", NOW - 10)], True]

        result = self.backend.hit("ip", limit=2, window=60, now=NOW)

        assert result["allowed"] is False
        assert result["remaining"] == 0
        assert result["reset"] == NOW + 50
        self.client.zrem.assert_called_once()
        assert self.client.zrem.call_args[0][0] == "test:rl:ip"


class TestLimiterRegistry:
    def test_limiter_per_platform_with_env_override(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_MAX_REQUESTS_PER_HOUR", "7")
        reset_rate_limiters()

        facebook = get_rate_limiter("facebook", 1000)
        assert facebook is get_rate_limiter("facebook", 1000)
        assert facebook.limit == 7
        assert get_rate_limiter("tiktok", 800) is not facebook

    def test_default_limit(self):
        assert get_rate_limiter("pinterest", 600).limit == 600
