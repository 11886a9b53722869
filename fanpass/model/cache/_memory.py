# cache/_memory.py
"""
In-process TTL cache.

Each server process holds its own copy, so two instances can serve
different values for up to `ttl_seconds`. Use the redis backend when that
matters.
"""
from __future__ import annotations
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple


class TTLCache:
    def __init__(self, ttl_seconds: int, namespace: str = "fanpass") -> None:
        self.ttl = ttl_seconds
        self.namespace = namespace
        self._data: Dict[str, Tuple[float, Any]] = {}

    def _k(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        hit = self._data.get(self._k(key))
        if hit is None:
            return None
        expires, value = hit
        if expires <= time.monotonic():
            self._data.pop(self._k(key), None)
            return None
        return value

    async def set(self, key: str, value: Any,
                  ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        self._data[self._k(key)] = (time.monotonic() + ttl, value)

    async def invalidate(self, key: str) -> None:
        self._data.pop(self._k(key), None)

    async def get_or_load(
        self, key: str, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        value = await self.get(key)
        if value is None:
            value = await loader()
            await self.set(key, value)
        return value
