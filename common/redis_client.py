"""
Redis helpers for at-most-once side effects
"""
import logging
import redis
from functools import lru_cache
from common.settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client=None):
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def claim_once(self, key: str, ttl_seconds: int) -> bool:
        """Return True for the first caller of a key within the TTL, False afterwards."""
        return bool(self.client.set(f"once:{key}", 1, nx=True, ex=ttl_seconds))

    def release(self, key: str) -> None:
        """Give a claim back so a later redelivery can retry the side effect."""
        self.client.delete(f"once:{key}")

@lru_cache(maxsize=1)
def get_redis_client() -> RedisClient:
    return RedisClient()
