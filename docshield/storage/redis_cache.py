from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from docshield.storage.errors import CounterStoreError


class RedisCounterStore:
    """Redis-backed counters for IP reputation and fixed-window rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment + expiry. ARGV[1] is the ttl (0 for none), ARGV[2] is
    # "1" to refresh the ttl on every hit. A key that somehow lost its ttl gets
    # one again so counters cannot become permanent.
    _INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if ttl > 0 then
  if count == 1 or ARGV[2] == '1' or redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], ttl)
  end
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_script = self.client.register_script(self._INCR_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr(
        self, key: str, *, ttl_seconds: Optional[int] = None, refresh_ttl: bool = False
    ) -> int:
        try:
            result = await self._incr_script(
                keys=[key], args=[int(ttl_seconds or 0), "1" if refresh_ttl else "0"]
            )
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        return int(result)

    async def get_int(self, key: str) -> int:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def set_flag(self, key: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, "1", ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.client.delete(*keys)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = await self.client.ttl(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        return int(remaining) if remaining is not None and remaining >= 0 else None

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCounterStore:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCounterStore.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_script = self._sync_client.register_script(
            RedisCounterStore._INCR_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def incr(
        self, key: str, *, ttl_seconds: Optional[int] = None, refresh_ttl: bool = False
    ) -> int:
        try:
            result = self._incr_script(
                keys=[key], args=[int(ttl_seconds or 0), "1" if refresh_ttl else "0"]
            )
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        return int(result)

    async def get_int(self, key: str) -> int:
        try:
            raw = self._sync_client.get(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def set_flag(self, key: str, ttl_seconds: int) -> None:
        try:
            self._sync_client.set(key, "1", ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(self._sync_client.exists(key))
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self._sync_client.delete(*keys)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self._sync_client.ttl(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc), key=key) from exc
        return int(remaining) if remaining is not None and remaining >= 0 else None

    async def ping(self) -> bool:
        try:
            return bool(self._sync_client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


__all__ = ["RedisCounterStore", "SyncRedisCounterStore"]
