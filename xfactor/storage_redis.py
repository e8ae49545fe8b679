"""Redis-backed implementation of :class:`xfactor.storage.KeyValueStore`."""

from __future__ import annotations

import json
from typing import Any, List, Optional

import redis.asyncio as redis

from xfactor.config import settings

_KEY_PREFIX = "xfactor:"


class RedisKeyValueStore:
    """Stores JSON-encoded values under a common key prefix."""

    def __init__(
        self,
        url: str | None = None,
        *,
        client: Any | None = None,
        prefix: str = _KEY_PREFIX,
    ) -> None:
        self._url = url or settings.REDIS_URL or "redis://localhost:6379/0"
        self._redis = client
        self._prefix = prefix

    async def _conn(self) -> Any:
        if self._redis is None:
            self._redis = redis.from_url(self._url, decode_responses=True)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        client = await self._conn()
        raw = await client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, *, ttl: Optional[float] = None) -> None:
        client = await self._conn()
        payload = json.dumps(value, ensure_ascii=False)
        if ttl is not None and ttl > 0:
            await client.set(self._key(key), payload, ex=max(int(ttl), 1))
        else:
            await client.set(self._key(key), payload)

    async def delete(self, key: str) -> bool:
        client = await self._conn()
        removed = await client.delete(self._key(key))
        return bool(removed)

    async def keys(self, pattern: str = "*") -> List[str]:
        client = await self._conn()
        found: List[str] = []
        async for raw in client.scan_iter(match=self._key(pattern)):
            found.append(raw[len(self._prefix):])
        return found

    async def set_if_absent(self, key: str, value: Any, *, ttl: Optional[float] = None) -> bool:
        client = await self._conn()
        payload = json.dumps(value, ensure_ascii=False)
        ex = max(int(ttl), 1) if ttl is not None and ttl > 0 else None
        return bool(await client.set(self._key(key), payload, ex=ex, nx=True))

    async def incr(self, key: str, amount: int = 1) -> int:
        client = await self._conn()
        return int(await client.incr(self._key(key), amount))

    async def close(self) -> None:
        """Close the cached Redis client (if initialized)."""

        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None


__all__ = ["RedisKeyValueStore"]
