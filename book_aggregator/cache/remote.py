"""Shared JSON document cache backed by Redis (tier 2)."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import TransientIOError

logger = log_mgr.get_logger().getChild("cache.remote")

ROOT_PATH = "$"


class DocumentCache(Protocol):
    """Async JSON key-value store with TTL and path-based access."""

    async def get(self, key: str, path: str = ROOT_PATH) -> Optional[Any]:
        ...

    async def set(
        self, key: str, value: Any, *, path: str = ROOT_PATH, ttl_seconds: Optional[int] = None
    ) -> None:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...


class RedisDocumentCache:
    """:class:`DocumentCache` over redis-py's asyncio client.

    With ``json_module`` enabled documents are stored through RedisJSON
    (``JSON.SET`` / ``JSON.GET``) so nested paths can be read or patched in
    place; otherwise the whole document is stored as a JSON string and only
    the root path is supported.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "book-aggregator",
        json_module: bool = True,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._json_module = json_module

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisDocumentCache":
        return cls(aioredis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    async def get(self, key: str, path: str = ROOT_PATH) -> Optional[Any]:
        try:
            if self._json_module:
                result = await self._client.json().get(self._key(key), path)
                if path == ROOT_PATH and isinstance(result, list):
                    return result[0] if result else None
                return result
            self._require_root(path)
            raw = await self._client.get(self._key(key))
        except RedisError as exc:
            raise TransientIOError(f"redis get failed for {key}: {exc}") from exc
        return json.loads(raw) if raw is not None else None

    async def set(
        self, key: str, value: Any, *, path: str = ROOT_PATH, ttl_seconds: Optional[int] = None
    ) -> None:
        name = self._key(key)
        try:
            if self._json_module:
                await self._client.json().set(name, path, value)
                if ttl_seconds:
                    await self._client.expire(name, int(ttl_seconds))
                return
            self._require_root(path)
            await self._client.set(name, json.dumps(value), ex=int(ttl_seconds) if ttl_seconds else None)
        except RedisError as exc:
            raise TransientIOError(f"redis set failed for {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(self._key(key)))
        except RedisError as exc:
            raise TransientIOError(f"redis exists failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as exc:
            raise TransientIOError(f"redis delete failed for {key}: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _require_root(path: str) -> None:
        if path != ROOT_PATH:
            raise ValueError("path access requires the RedisJSON module")


__all__ = ["DocumentCache", "ROOT_PATH", "RedisDocumentCache"]
