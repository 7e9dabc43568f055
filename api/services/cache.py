"""
Status cache — short-lived Redis copy of subscription snapshots.

Keys:
  billing:status:{hash}        JSON snapshot for one set of identity candidates
  billing:status-keys:{sub_id} set of status keys that point at a record

The snapshot holds evaluator inputs, never an evaluated view, so a cached
entry cannot outlive a trial boundary. Writers call invalidate() after
commit. Redis errors are logged and treated as a miss.
"""

import hashlib
import json
import logging

import redis.asyncio as aioredis

from services.evaluator import SubscriptionSnapshot

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def get_redis(url: str) -> aioredis.Redis:
    """Singleton Redis connection."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(url, decode_responses=True)
    return _redis


def candidates_key(email: str | None, user_id: str | None, account_id: str | None) -> str:
    raw = f"{email or ''}|{user_id or ''}|{account_id or ''}"
    return "billing:status:" + hashlib.sha256(raw.encode()).hexdigest()[:24]


class StatusCache:
    def __init__(self, redis: aioredis.Redis | None, ttl_seconds: int = 30):
        self.redis = redis
        self.ttl = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None and self.ttl > 0

    async def get(self, key: str) -> SubscriptionSnapshot | None:
        if not self.enabled:
            return None
        try:
            raw = await self.redis.get(key)
        except Exception as e:
            logger.warning("Status cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return SubscriptionSnapshot.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning("Discarding unreadable status cache entry %s: %s", key, e)
            return None

    async def put(self, key: str, snapshot: SubscriptionSnapshot) -> None:
        if not self.enabled:
            return
        try:
            await self.redis.set(key, json.dumps(snapshot.to_dict()), ex=self.ttl)
            index = f"billing:status-keys:{snapshot.id}"
            await self.redis.sadd(index, key)
            await self.redis.expire(index, self.ttl)
        except Exception as e:
            logger.warning("Status cache write failed for %s: %s", key, e)

    async def invalidate(self, subscription_id, *candidate_keys: str) -> None:
        """Drop every cached entry that resolved to ``subscription_id``."""
        if not self.enabled:
            return
        index = f"billing:status-keys:{subscription_id}"
        try:
            keys = set(await self.redis.smembers(index) or ())
            keys.update(candidate_keys)
            keys.add(index)
            await self.redis.delete(*keys)
        except Exception as e:
            logger.warning("Status cache invalidation failed for %s: %s", subscription_id, e)
