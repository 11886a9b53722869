# cache/_redis.py
from __future__ import annotations
from typing import Any, Awaitable, Callable, Optional

import orjson
import redis.asyncio as redis


# ---- keys
def k_cache(ns: str, key: str) -> str: return f"{ns}:cache:{key}"


class TTLCache:
    """Shared across instances; values are stored as orjson blobs."""

    def __init__(self, r: redis.Redis, ttl_seconds: int,
                 namespace: str = "fanpass") -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.namespace = namespace

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.r.get(k_cache(self.namespace, key))
        if raw is None:
            return None
        return orjson.loads(raw)

    async def set(self, key: str, value: Any,
                  ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        await self.r.set(k_cache(self.namespace, key), orjson.dumps(value),
                         ex=max(1, int(ttl)))

    async def invalidate(self, key: str) -> None:
        await self.r.delete(k_cache(self.namespace, key))

    async def get_or_load(
        self, key: str, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        value = await self.get(key)
        if value is None:
            value = await loader()
            await self.set(key, value)
        return value
