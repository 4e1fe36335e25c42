"""
Redis Connection Management

Redis connection with retries, per-sender rate limiting and in-flight claims
for webhook deliveries. Everything here fails open: a Redis outage must never
stop customers from being answered.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from agenda.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "agenda:v1:"


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Features:
    - Automatic retries with exponential backoff
    - Timeouts
    - Graceful failure handling (returns None instead of raising)
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False


class RateLimiterStore:
    """
    Fixed-window counter per sender.

    Key: agenda:v1:ratelimit:{identifier}

    IMPORTANT: Fails OPEN - if Redis is unavailable, requests are ALLOWED.
    """

    RATELIMIT_PREFIX = f"{APP_PREFIX}ratelimit:"

    def __init__(
        self,
        redis_client: Optional[Redis],
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        self.redis = redis_client
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window

    def _key(self, identifier: str) -> str:
        """Generate rate limit key with namespace."""
        return f"{self.RATELIMIT_PREFIX}{identifier}"

    async def is_allowed(self, identifier: str) -> tuple[bool, int, int]:
        """
        Check if request is allowed under rate limit.

        Args:
            identifier: Unique identifier (e.g., "tenant:{id}:sender:{phone}")

        Returns:
            Tuple of (allowed: bool, remaining: int, reset_seconds: int)
        """
        if self.redis is None:
            logger.warning(f"Redis unavailable - rate limiting bypassed for {identifier}")
            return (True, self.max_requests, self.window_seconds)

        try:
            key = self._key(identifier)

            current = await self.redis.incr(key)

            # Set expiry on first request in window
            if current == 1:
                await self.redis.expire(key, self.window_seconds)

            ttl = await self.redis.ttl(key)
            if ttl < 0:
                ttl = self.window_seconds

            remaining = max(0, self.max_requests - current)
            allowed = current <= self.max_requests

            if not allowed:
                logger.info(f"Rate limit exceeded for {identifier}")

            return (allowed, remaining, ttl)

        except RedisError as e:
            logger.error(f"Rate limit check failed for {identifier}: {e} - allowing request")
            return (True, self.max_requests, self.window_seconds)


class InFlightGuard:
    """
    Short-lived claim on a provider message id while it is being handled.

    Key: agenda:v1:inflight:{conversation_id}:{provider_message_id}

    Providers redeliver webhooks that take long to answer. The durable
    idempotency marker is only written after the reply is sent, so two
    deliveries of the same message could otherwise both pass the
    ``has_processed`` check. The claim closes that window. Fails OPEN.
    """

    INFLIGHT_PREFIX = f"{APP_PREFIX}inflight:"

    def __init__(self, redis_client: Optional[Redis], ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.inflight_claim_ttl

    def _key(self, conversation_id: str, provider_message_id: str) -> str:
        return f"{self.INFLIGHT_PREFIX}{conversation_id}:{provider_message_id}"

    async def claim(self, conversation_id: str, provider_message_id: str) -> bool:
        """Return True if this caller owns the delivery, False if another holds it."""
        if self.redis is None:
            return True

        try:
            acquired = await self.redis.set(
                self._key(conversation_id, provider_message_id),
                "1",
                nx=True,
                ex=self.ttl_seconds,
            )
            return bool(acquired)
        except RedisError as e:
            logger.error(f"In-flight claim failed for {provider_message_id}: {e} - proceeding")
            return True

    async def release(self, conversation_id: str, provider_message_id: str) -> None:
        if self.redis is None:
            return

        try:
            await self.redis.delete(self._key(conversation_id, provider_message_id))
        except RedisError as e:
            logger.warning(f"Failed to release in-flight claim for {provider_message_id}: {e}")


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await RedisClient.get_client()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
