"""
Leased counting semaphore on a Redis sorted set.

Each member of the set is a holder id scored by its lease expiry in epoch
milliseconds. Every operation runs as one Lua script, so purging expired
leases, checking the count and inserting happen as a single atomic step on
the server. A holder that crashes never needs to release: its lease expires
and the next acquire or count on the key purges it.

The scripts use the server clock (TIME) unless the caller supplies one, so
that all processes agree on "now".
"""
import logging
from typing import Callable, List, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


_NOW = """
local now = tonumber(ARGV[1])
if not now then
    local t = redis.call('TIME')
    now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
end
"""

# Keep the key itself alive at least as long as its newest lease
_TOUCH_KEY = """
local function touch(key, ttl_ms)
    local pttl = redis.call('PTTL', key)
    if pttl < ttl_ms then
        redis.call('PEXPIRE', key, ttl_ms)
    end
end
"""

# KEYS[1] = key; ARGV = now_ms, holder, max, ttl_ms
ACQUIRE_SCRIPT = _NOW + _TOUCH_KEY + """
local holder = ARGV[2]
local max_holders = tonumber(ARGV[3])
local ttl_ms = tonumber(ARGV[4])

redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now)

if redis.call('ZSCORE', KEYS[1], holder) then
    redis.call('ZADD', KEYS[1], now + ttl_ms, holder)
    touch(KEYS[1], ttl_ms)
    return 1
end

if redis.call('ZCARD', KEYS[1]) < max_holders then
    redis.call('ZADD', KEYS[1], now + ttl_ms, holder)
    touch(KEYS[1], ttl_ms)
    return 1
end

return 0
"""

# KEYS[1] = key; ARGV = now_ms, holder
RELEASE_SCRIPT = """
return redis.call('ZREM', KEYS[1], ARGV[2])
"""

# KEYS[1] = key; ARGV = now_ms
COUNT_SCRIPT = _NOW + """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now)
return redis.call('ZCARD', KEYS[1])
"""

# KEYS[1] = key; ARGV = now_ms, holder, ttl_ms
EXTEND_SCRIPT = _NOW + _TOUCH_KEY + """
local holder = ARGV[2]
local ttl_ms = tonumber(ARGV[3])

local expires = redis.call('ZSCORE', KEYS[1], holder)
if not expires or tonumber(expires) <= now then
    redis.call('ZREM', KEYS[1], holder)
    return 0
end

redis.call('ZADD', KEYS[1], now + ttl_ms, holder)
touch(KEYS[1], ttl_ms)
return 1
"""


class LeaseSemaphore:
    """
    At most N non-expired leases per resource key.

    Guarantees:
    - Purge, check and insert are one server-side script
    - Leases are hard limits; expired ones are purged before counting
    - Re-acquiring with a live holder id refreshes its lease instead of
      consuming a second unit
    """

    def __init__(self, redis: aioredis.Redis, clock: Optional[Callable[[], int]] = None):
        """
        Args:
            redis: asyncio Redis client
            clock: optional callable returning epoch milliseconds; when
                omitted the Redis server clock is used
        """
        self._redis = redis
        self._clock = clock
        self._acquire = redis.register_script(ACQUIRE_SCRIPT)
        self._release = redis.register_script(RELEASE_SCRIPT)
        self._count = redis.register_script(COUNT_SCRIPT)
        self._extend = redis.register_script(EXTEND_SCRIPT)

    def _now_arg(self) -> str:
        if self._clock is None:
            return ""
        return str(int(self._clock()))

    async def acquire(self, key: str, holder_id: str, max_holders: int, ttl_seconds: float) -> bool:
        """
        Try to take one unit of capacity on `key`.

        Returns:
            True if a lease was granted (or refreshed), False if the key is full.
        """
        if max_holders <= 0:
            return False
        ttl_ms = int(ttl_seconds * 1000)
        result = await self._acquire(
            keys=[key],
            args=[self._now_arg(), holder_id, max_holders, ttl_ms],
        )
        acquired = int(result) == 1
        if acquired:
            logger.debug(f"[SEMAPHORE ACQUIRE] key={key} holder={holder_id}")
        else:
            logger.info(f"[SEMAPHORE FULL] key={key} holder={holder_id} max={max_holders}")
        return acquired

    async def release(self, key: str, holder_id: str) -> bool:
        """Remove exactly this holder's lease. False if it was not present."""
        result = await self._release(keys=[key], args=[self._now_arg(), holder_id])
        released = int(result) == 1
        logger.debug(f"[SEMAPHORE RELEASE] key={key} holder={holder_id} released={released}")
        return released

    async def count(self, key: str) -> int:
        """Number of live leases on `key` after purging expired ones."""
        result = await self._count(keys=[key], args=[self._now_arg()])
        return int(result)

    async def extend(self, key: str, holder_id: str, additional_ttl_seconds: float) -> bool:
        """Reset a live lease's expiry to now + additional_ttl_seconds."""
        ttl_ms = int(additional_ttl_seconds * 1000)
        result = await self._extend(keys=[key], args=[self._now_arg(), holder_id, ttl_ms])
        return int(result) == 1

    async def holders(self, key: str) -> List[Tuple[str, int]]:
        """Live (holder_id, expires_at_ms) pairs, oldest expiry first."""
        await self.count(key)
        members = await self._redis.zrange(key, 0, -1, withscores=True)
        return [(member, int(score)) for member, score in members]
