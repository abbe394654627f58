"""Redis client utilities."""

from functools import lru_cache
from typing import Optional

import redis

from backend.utils.config import get_settings


@lru_cache()
def get_redis_client() -> redis.Redis:
    """Return a shared Redis client built from settings."""

    settings = get_settings()
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def queue_push(key: str, *values: str, max_length: Optional[int] = None) -> int:
    """Append values to a Redis list, optionally trimming it to its newest entries."""

    client = get_redis_client()
    with client.pipeline(transaction=True) as pipe:
        pipe.rpush(key, *values)
        if max_length:
            pipe.ltrim(key, -max_length, -1)
        results = pipe.execute()
    return int(results[0])
