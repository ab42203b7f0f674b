"""
Keyed counters with TTL, shared by every API instance through Redis.

Used for OTP send cooldowns and hourly caps, failed TOTP attempt windows,
per-endpoint request throttling and single-use markers for partial tokens.
Counters are cache entries, not a ledger: they disappear when their window
elapses.
"""

from typing import Optional

from redis.asyncio import Redis


class CounterStore:
    """
    Concurrency-safe counters on top of Redis atomic primitives.

    INCR and SET NX are atomic on the server, so concurrent requests for the
    same key never lose an increment or both win a claim.
    """

    def __init__(self, redis: Redis, namespace: str = "msls"):
        self.redis = redis
        self.namespace = namespace

    def key(self, *parts) -> str:
        return ":".join([self.namespace, *[str(p) for p in parts]])

    async def hit(self, key: str, window_sec: int) -> int:
        """
        Increment a window counter, starting the window on the first hit.

        Returns:
            Count after this hit
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            # NX: only the hit that created the key sets the expiry
            pipe.expire(key, window_sec, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def count(self, key: str) -> int:
        value = await self.redis.get(key)
        return int(value) if value is not None else 0

    async def ttl(self, key: str) -> int:
        """Seconds left on a key (0 when missing or without expiry)"""
        remaining = await self.redis.ttl(key)
        return max(int(remaining), 0)

    async def claim(self, key: str, ttl_sec: int, value: str = "1") -> bool:
        """
        Take a key for ttl_sec seconds.

        Returns:
            True if this caller created the key, False if it already existed
        """
        return bool(await self.redis.set(key, value, ex=ttl_sec, nx=True))

    async def reset(self, key: str) -> None:
        await self.redis.delete(key)

    async def allow(self, prefix: str, *parts, max_attempts: int, window_sec: int) -> bool:
        """
        Fixed-window throttle.

        Usage:
            if not await limiter.allow("login", email, client_ip, max_attempts=20, window_sec=900):
                raise HTTPException(status_code=429, detail="Too many requests")
        """
        count = await self.hit(self.key("throttle", prefix, *parts), window_sec)
        return count <= max_attempts

    async def retry_after(self, key: str, default: Optional[int] = None) -> Optional[int]:
        remaining = await self.ttl(key)
        return remaining or default
