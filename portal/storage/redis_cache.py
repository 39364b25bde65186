from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_KEY_PREFIX = "portal:rate"


class RedisCache:
    """Redis-backed rate limiting shared across portal workers."""

    # refill and consume in one script so concurrent workers share a bucket
    _BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - at) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', bucket, 'level', level, 'at', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(level), wait}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping Redis once; raises when the server is unreachable."""
        # a throwaway sync client keeps the async pool off the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    @staticmethod
    def _normalize_rate_key(key: str, tenant_id: Optional[str] = None) -> str:
        """Hash the logical key so client-supplied parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        if tenant_id:
            return f"{RATE_KEY_PREFIX}:{tenant_id}:{digest}"
        return f"{RATE_KEY_PREFIX}:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        rate = float(limit) / float(window_seconds)
        allowed, level, wait = await self._token_bucket(
            keys=[self._normalize_rate_key(key, tenant_id)],
            args=[time.time(), rate, limit, max(1, cost)],
        )
        permitted = int(allowed) == 1
        if not return_remaining:
            return permitted
        return permitted, max(0, int(float(level))), int(wait or 0)

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
