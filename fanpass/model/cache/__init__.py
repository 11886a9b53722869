import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("CACHE_BACKEND", "memory").lower()  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import TTLCache as _TTLCache
else:
    from ._memory import TTLCache as _TTLCache


# redis backend needs `r`; memory ignores it
def new_cache(*, r: Optional[redis.Redis] = None, ttl_seconds: int = 30,
              namespace: str = "fanpass"):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("TTLCache(redis) requires r=redis.Redis")
        return _TTLCache(r=r, ttl_seconds=ttl_seconds, namespace=namespace)
    return _TTLCache(ttl_seconds=ttl_seconds, namespace=namespace)


TTLCache = _TTLCache
__all__ = ["TTLCache", "new_cache", "BACKEND"]
