from functools import lru_cache

from redis.asyncio import Redis

from .config import get_settings
from .db import get_db
from .payments import get_payment_provider

__all__ = ["get_db", "get_redis", "get_payment_provider"]


@lru_cache
def _redis_client() -> Redis:
    return Redis.from_url(get_settings().REDIS_URL, decode_responses=True)


def get_redis() -> Redis:
    return _redis_client()
