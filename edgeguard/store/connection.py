#  EdgeGuard - Key-Value Store
#
#  Async Redis wrapper exposing only the operations the security layer
#  needs: set membership, JSON values with TTL, and a sliding-window log.
#  Backend failures surface as StoreUnavailableError so callers can apply
#  their own fail-open policy against a single error type.
#
#  Depends on: exceptions.py
#  Used by:    container.py (via DI), services/ban_registry.py,
#              services/cidr_matcher.py, services/limiter_bank.py, tests

import json
import logging
import math
from contextlib import contextmanager

import redis.asyncio as redis
from redis.exceptions import RedisError

from edgeguard.exceptions import StoreUnavailableError

logger = logging.getLogger("edgeguard.store")


# ---------------------------------------------------------------------------
# Logical key schema
# ---------------------------------------------------------------------------

BAN_IPS = "ban:ips"
BAN_CIDRS = "ban:cidrs"
SLOW_IPS = "ban:slow"
TEMP_BANS = "ban:temp"


def ban_meta_key(identifier: str) -> str:
    return f"ban:meta:{identifier}"


def slow_meta_key(identifier: str) -> str:
    return f"slow:meta:{identifier}"


def cidr_meta_key(cidr: str) -> str:
    return f"cidr:meta:{cidr}"


@contextmanager
def _store_errors(operation: str):
    """Translate redis/socket failures into StoreUnavailableError."""
    try:
        yield
    except (RedisError, OSError) as e:
        raise StoreUnavailableError(f"Store {operation} failed: {e}") from e


# ---------------------------------------------------------------------------
# Store class
# ---------------------------------------------------------------------------

class KeyValueStore:
    """Networked key-value/set store backed by Redis.

    The client must be created with decode_responses=True so members and
    values come back as str. Tests pass a fakeredis client.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float | None = None) -> "KeyValueStore":
        return cls(redis.from_url(url, decode_responses=True, socket_timeout=socket_timeout))

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def ping(self) -> bool:
        with _store_errors("ping"):
            return bool(await self._client.ping())

    async def close(self):
        await self._client.aclose()
        logger.info("Store connection closed")

    # --- Sets ---

    async def sismember(self, key: str, member: str) -> bool:
        with _store_errors("sismember"):
            return bool(await self._client.sismember(key, member))

    async def sadd(self, key: str, *members: str) -> int:
        with _store_errors("sadd"):
            return await self._client.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        with _store_errors("srem"):
            return await self._client.srem(key, *members)

    async def smembers(self, key: str) -> set[str]:
        with _store_errors("smembers"):
            return set(await self._client.smembers(key))

    # --- Values ---

    async def get_json(self, key: str) -> dict | None:
        with _store_errors("get"):
            raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: dict, ttl: float | None = None):
        """Store a JSON value, expiring after ttl seconds when given."""
        payload = json.dumps(value)
        with _store_errors("set"):
            if ttl:
                # Redis rejects a zero expiry; round tiny TTLs up to 1ms
                await self._client.set(key, payload, px=max(1, int(ttl * 1000)))
            else:
                await self._client.set(key, payload)

    async def delete(self, *keys: str) -> int:
        with _store_errors("delete"):
            return await self._client.delete(*keys)

    async def exists(self, key: str) -> bool:
        with _store_errors("exists"):
            return bool(await self._client.exists(key))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 when persistent, -2 when missing."""
        with _store_errors("ttl"):
            return await self._client.ttl(key)

    # --- Sliding-window log ---

    async def window_add(
        self, key: str, member: str, now: float, window: float
    ) -> tuple[int, float]:
        """Prune, add and count in one MULTI/EXEC transaction.

        Returns (count including the new member, score of the oldest entry).
        """
        with _store_errors("window_add"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - window)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, math.ceil(window) + 1)
                _, _, count, oldest, _ = await pipe.execute()
        oldest_score = oldest[0][1] if oldest else now
        return int(count), float(oldest_score)

    async def window_discard(self, key: str, member: str):
        with _store_errors("window_discard"):
            await self._client.zrem(key, member)
