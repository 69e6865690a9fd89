from __future__ import annotations

from functools import lru_cache

from redis import asyncio as aioredis

from linkmeta.core.config import get_settings


def build_redis(redis_url: str) -> aioredis.Redis:
    return aioredis.from_url(redis_url, decode_responses=True)


@lru_cache
def get_redis() -> aioredis.Redis:
    return build_redis(get_settings().redis_url)
