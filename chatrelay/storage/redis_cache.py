from __future__ import annotations

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for cross-process conversation locks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete the key only if we still own it
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # Push the expiry out only while we still own the key
    _EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _lock_key(name: str) -> str:
        return f"lock:{name}"

    async def acquire_lock(self, name: str, token: str, ttl_seconds: int) -> bool:
        """Try once to take ``name``; ``ttl_seconds`` bounds a crashed holder."""
        acquired = await self.client.set(
            self._lock_key(name), token, nx=True, ex=max(ttl_seconds, 1)
        )
        return bool(acquired)

    async def release_lock(self, name: str, token: str) -> bool:
        result = await self.client.eval(self._RELEASE_SCRIPT, 1, self._lock_key(name), token)
        return bool(result)

    async def extend_lock(self, name: str, token: str, ttl_seconds: int) -> bool:
        result = await self.client.eval(
            self._EXTEND_SCRIPT, 1, self._lock_key(name), token, max(ttl_seconds, 1)
        )
        return bool(result)

    async def close(self) -> None:
        await self.client.aclose()
