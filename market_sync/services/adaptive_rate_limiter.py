"""
Adaptive rate limiter shared by all workers hitting a marketplace API.

A Redis token bucket per provider, with a factor that shrinks on every 429
and slowly grows back while the provider answers normally.
"""
import asyncio
import logging
import math
import time
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from market_sync.core.config import get_settings
from market_sync.core.prometheus_metrics import provider_rate_limit_hits_total
from market_sync.core.redis_client import get_redis_sync

settings = get_settings()
logger = logging.getLogger(__name__)

_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local max_tokens = tonumber(ARGV[1])
local window_seconds = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local tokens_to_consume = tonumber(ARGV[4])

local bucket = redis.call('HMGET', key, 'tokens', 'refill_time')
local current_tokens = tonumber(bucket[1])
local refill_time = tonumber(bucket[2])

if not current_tokens or now >= refill_time then
    current_tokens = max_tokens
    refill_time = now + window_seconds
end

if current_tokens >= tokens_to_consume then
    current_tokens = current_tokens - tokens_to_consume
    redis.call('HSET', key, 'tokens', current_tokens, 'refill_time', refill_time)
    redis.call('EXPIRE', key, window_seconds * 2)
    return {1, '0', current_tokens}
end

return {0, tostring(math.max(0, refill_time - now)), current_tokens}
"""


def requests_per_window(min_interval_ms: int, window_seconds: int) -> int:
    """Bucket size that keeps the average spacing at `min_interval_ms`."""
    return max(1, math.floor(window_seconds * 1000 / min_interval_ms))


class AdaptiveRateLimiter:
    """
    Distributed token bucket with adaptive limits, one bucket per provider.

    Fails open: if Redis is unreachable requests go through, and the
    per-client spacing in the provider clients still applies.
    """

    def __init__(
        self,
        base_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        self.base_requests = base_requests or settings.RATE_LIMIT_REQUESTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self.redis = get_redis_sync()

        self.min_factor = 0.5
        self.max_factor = 1.0
        self.reduction_factor = 0.9
        self.increase_factor = 1.01
        self.stats_window = 3600

    def _get_key(self, provider: str, suffix: str = "") -> str:
        base = f"rate_limit:{provider}"
        return f"{base}:{suffix}" if suffix else base

    def effective_limit(self, provider: str) -> int:
        return max(1, int(self.base_requests * self._get_adaptive_factor(provider)))

    def check_and_consume(self, provider: str, tokens: int = 1) -> Tuple[bool, Optional[float]]:
        """
        Check if a request to `provider` is allowed and consume tokens.

        Returns:
            (allowed, wait_seconds)
        """
        try:
            limit = self.effective_limit(provider)
            result = self.redis.eval(
                _TOKEN_BUCKET_SCRIPT,
                1,
                self._get_key(provider),
                limit,
                self.window_seconds,
                time.time(),
                tokens,
            )
        except RedisError as e:
            logger.error(f"Rate limiter error for {provider}: {e}")
            return True, None

        allowed = bool(int(result[0]))
        wait_seconds = float(result[1])
        remaining = int(result[2])

        if remaining < limit * 0.1:
            logger.debug(f"{provider} approaching rate limit: {remaining}/{limit} tokens remaining")

        return allowed, (wait_seconds if wait_seconds > 0 else None)

    async def acquire(self, provider: str, max_wait: float = 60.0) -> None:
        """Wait until a token for `provider` is available (or `max_wait` has passed)."""
        waited = 0.0
        while True:
            allowed, wait_seconds = self.check_and_consume(provider)
            if allowed or not wait_seconds or waited >= max_wait:
                return
            wait_seconds = min(wait_seconds, max_wait - waited)
            logger.warning(f"Rate limit reached for {provider}, waiting {wait_seconds:.2f}s")
            await asyncio.sleep(wait_seconds)
            waited += wait_seconds

    def record_429_response(self, provider: str) -> None:
        """Record a 429 from `provider` and shrink its limit."""
        provider_rate_limit_hits_total.labels(provider=provider).inc()
        stats_key = self._get_key(provider, "stats")
        try:
            self.redis.incr(f"{stats_key}:429_count")
            self.redis.expire(f"{stats_key}:429_count", self.stats_window)
            self.redis.lpush(f"{stats_key}:429_timestamps", time.time())
            self.redis.ltrim(f"{stats_key}:429_timestamps", 0, 100)
            self.redis.expire(f"{stats_key}:429_timestamps", self.stats_window)

            current_factor = self._get_adaptive_factor(provider)
            new_factor = max(self.min_factor, current_factor * self.reduction_factor)
            self._set_adaptive_factor(provider, new_factor)
        except RedisError as e:
            logger.error(f"Could not record 429 for {provider}: {e}")
            return

        logger.warning(
            f"{provider} returned 429, reducing rate limit factor "
            f"from {current_factor:.2f} to {new_factor:.2f}"
        )

    def record_success(self, provider: str) -> None:
        """Record a successful request and let the limit recover."""
        stats_key = self._get_key(provider, "stats")
        try:
            self.redis.incr(f"{stats_key}:success_count")
            self.redis.expire(f"{stats_key}:success_count", self.stats_window)

            if self._get_recent_429_count(provider, window=300) == 0:
                current_factor = self._get_adaptive_factor(provider)
                if current_factor < self.max_factor:
                    self._set_adaptive_factor(
                        provider, min(self.max_factor, current_factor * self.increase_factor)
                    )
        except RedisError as e:
            logger.debug(f"Could not record success for {provider}: {e}")

    def _get_adaptive_factor(self, provider: str) -> float:
        factor = self.redis.get(self._get_key(provider, "factor"))
        if factor is None:
            return 1.0
        return float(factor)

    def _set_adaptive_factor(self, provider: str, factor: float) -> None:
        self.redis.setex(self._get_key(provider, "factor"), self.stats_window, factor)

    def _get_recent_429_count(self, provider: str, window: int = 300) -> int:
        timestamps = self.redis.lrange(f"{self._get_key(provider, 'stats')}:429_timestamps", 0, -1)
        cutoff = time.time() - window
        return sum(1 for ts in timestamps if float(ts) > cutoff)

    def get_statistics(self, provider: str) -> dict:
        stats_key = self._get_key(provider, "stats")
        factor = self._get_adaptive_factor(provider)
        return {
            "provider": provider,
            "base_limit": self.base_requests,
            "window_seconds": self.window_seconds,
            "adaptive_factor": factor,
            "effective_limit": max(1, int(self.base_requests * factor)),
            "429_count_1h": int(self.redis.get(f"{stats_key}:429_count") or 0),
            "success_count_1h": int(self.redis.get(f"{stats_key}:success_count") or 0),
            "recent_429s_5m": self._get_recent_429_count(provider, window=300),
        }

    def reset(self, provider: str) -> None:
        """Reset rate limit state for a provider (admin/testing)."""
        keys = self.redis.keys(f"{self._get_key(provider)}*")
        if keys:
            self.redis.delete(*keys)
        logger.info(f"Reset rate limit state for {provider}")


_rate_limiters: Dict[str, AdaptiveRateLimiter] = {}


def get_adaptive_rate_limiter(provider: str) -> AdaptiveRateLimiter:
    """Get or create the limiter for a provider, sized from its minimum request spacing."""
    if provider not in _rate_limiters:
        interval_ms = {
            "stockx": settings.STOCKX_RATE_LIMIT_MS,
            "alias": settings.ALIAS_RATE_LIMIT_MS,
        }.get(provider)
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        base = requests_per_window(interval_ms, window) if interval_ms else settings.RATE_LIMIT_REQUESTS
        _rate_limiters[provider] = AdaptiveRateLimiter(base_requests=base, window_seconds=window)
    return _rate_limiters[provider]
