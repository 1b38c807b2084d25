"""
Redis-based Rate Limiter for AI generation endpoints, using a Token Bucket.

Every call that reaches the generative model (step generation, notes,
flashcards, practice questions, question extraction) spends one token from
the user's bucket. Buckets refill gradually over the window.
"""

import time
import redis.asyncio as redis
from typing import Optional
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for AI rate limiting."""
    limit: int = 5            # requests per window
    window_seconds: int = 60  # 1 minute window


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_in: int  # seconds until the next token is available


def refill_tokens(stored: Optional[float], last: Optional[float], now: float, limit: int, window: int) -> float:
    """Tokens available at ``now`` given the stored balance and last spend time."""
    current = stored if stored is not None else float(limit)
    elapsed = max(0.0, now - last) if last is not None else 0.0
    return min(float(limit), current + elapsed * (limit / window))


def seconds_until_token(tokens: float, limit: int, window: int) -> int:
    if tokens >= 1:
        return 0
    return int((1 - tokens) * (window / limit)) + 1


class RateLimiter:
    """
    Token Bucket Rate Limiter backed by Redis.

    Keys used:
    - ai_quota:{user_id}:tokens  → remaining tokens
    - ai_quota:{user_id}:last    → last request timestamp
    """

    def __init__(
        self,
        redis_url: str,
        config: Optional[RateLimitConfig] = None
    ):
        self.redis_url = redis_url
        self.config = config or RateLimitConfig()
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Initialize Redis connection."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._client.ping()
            logger.info("Rate limiter connected to Redis")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _keys(user_id: str) -> tuple[str, str]:
        return f"ai_quota:{user_id}:tokens", f"ai_quota:{user_id}:last"

    async def _read_bucket(self, user_id: str) -> tuple[Optional[float], Optional[float]]:
        if not self._client:
            raise RuntimeError("Rate limiter not connected. Call connect() first.")
        tokens_key, last_key = self._keys(user_id)
        pipe = self._client.pipeline()
        pipe.get(tokens_key)
        pipe.get(last_key)
        stored, last = await pipe.execute()
        return (
            float(stored) if stored is not None else None,
            float(last) if last is not None else None,
        )

    async def check_rate_limit(self, user_id: str) -> RateLimitDecision:
        """Spend one token if available."""
        limit = self.config.limit
        window = self.config.window_seconds
        now = time.time()

        stored, last = await self._read_bucket(user_id)
        tokens = refill_tokens(stored, last, now, limit, window)

        allowed = tokens >= 1
        if allowed:
            tokens -= 1

        tokens_key, last_key = self._keys(user_id)
        pipe = self._client.pipeline()
        pipe.set(tokens_key, str(tokens), ex=window * 2)
        pipe.set(last_key, str(now), ex=window * 2)
        await pipe.execute()

        if not allowed:
            logger.warning(f"AI rate limit exceeded for user {user_id} (limit={limit}/{window}s)")

        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, int(tokens)),
            limit=limit,
            reset_in=seconds_until_token(tokens, limit, window),
        )

    async def get_quota_status(self, user_id: str) -> dict:
        """Current balance without spending a token."""
        limit = self.config.limit
        window = self.config.window_seconds
        stored, last = await self._read_bucket(user_id)
        tokens = refill_tokens(stored, last, time.time(), limit, window)
        return {
            "remaining": max(0, int(tokens)),
            "limit": limit,
            "window_seconds": window,
            "reset_in_seconds": int((limit - tokens) * (window / limit)) if tokens < limit else 0,
            "enabled": True
        }


# Global instance (initialized on startup)
rate_limiter: Optional[RateLimiter] = None


async def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    if rate_limiter is None:
        raise RuntimeError("Rate limiter not initialized")
    return rate_limiter


async def init_rate_limiter(redis_url: str, config: Optional[RateLimitConfig] = None) -> RateLimiter:
    """Initialize the global rate limiter."""
    global rate_limiter
    limiter = RateLimiter(redis_url, config)
    await limiter.connect()
    rate_limiter = limiter
    return rate_limiter


async def close_rate_limiter() -> None:
    """Close the global rate limiter."""
    global rate_limiter
    if rate_limiter:
        await rate_limiter.close()
        rate_limiter = None
