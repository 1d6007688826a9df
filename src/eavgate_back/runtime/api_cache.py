"""Mirror cache for external source responses.

Stores the last response an external source returned for a synchronized
object, keyed by a hash of the object's resolved URI. The renderer merges
this "mirror data" into the output of the object.

Backed by Redis when a URL is configured and reachable; otherwise degrades
to an in-process store so mirror data still works within one process.

Cache key structure::

    mirror:{uri_hash}           → JSON response

Usage::

    cache = MirrorCache()  # reads REDIS_URL, in-process store if empty
    await cache.put(uri, response_data)
    data = await cache.get(uri)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TTL = 86400  # 24 hours
_DEFAULT_MAX_LOCAL = 1024


class MirrorCache:
    """Async cache for mirror data.

    All methods are async and fail-open: Redis errors are logged and the
    in-process store is used instead.

    Args:
        redis_url: Explicit Redis URL.  ``None`` → read ``REDIS_URL`` env var.
        ttl: Expiry in seconds for cached responses.
        max_local: Entries the in-process store holds before it is pruned.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        ttl: int = _DEFAULT_TTL,
        max_local: int = _DEFAULT_MAX_LOCAL,
    ) -> None:
        self._redis_url = redis_url or os.environ.get("REDIS_URL", "")
        self._ttl = ttl
        self._max_local = max_local
        self._redis: Any = None
        self._connected = False
        self._attempted = False
        # key -> (expires_at, serialized response)
        self._local: dict[str, tuple[float, str]] = {}

    async def _ensure_connected(self) -> bool:
        """Lazy-connect to Redis on first use.  Returns True if connected."""
        if not self._redis_url:
            return False
        if self._connected:
            return True
        if self._attempted:
            return False
        self._attempted = True
        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._redis.ping()
            self._connected = True
            logger.info("MirrorCache connected to Redis")
            return True
        except Exception as e:
            logger.info("MirrorCache using in-process store (Redis unavailable: %s)", e)
            self._redis = None
            self._connected = False
            return False

    @property
    def available(self) -> bool:
        """Whether the Redis backend is connected."""
        return self._connected

    @staticmethod
    def uri_hash(uri: str) -> str:
        return hashlib.sha256(uri.encode()).hexdigest()[:16]

    def key(self, uri: str) -> str:
        return f"mirror:{self.uri_hash(uri)}"

    async def get(self, uri: str) -> dict[str, Any] | None:
        """Return the mirror data for a URI, or ``None`` on miss."""
        key = self.key(uri)
        raw: str | None = None
        if await self._ensure_connected():
            try:
                raw = await self._redis.get(key)
            except Exception as e:
                logger.debug("Cache get failed: %s", e)
        if raw is None:
            entry = self._local.get(key)
            if entry is not None:
                expires_at, raw = entry
                if expires_at < time.monotonic():
                    del self._local[key]
                    raw = None
        if not raw:
            return None
        result: dict[str, Any] = json.loads(raw)
        return result

    async def put(self, uri: str, data: dict[str, Any], ttl: int | None = None) -> None:
        """Cache a response with an expiry."""
        key = self.key(uri)
        ttl = ttl or self._ttl
        raw = json.dumps(data, default=str)
        if await self._ensure_connected():
            try:
                await self._redis.setex(key, ttl, raw)
                return
            except Exception as e:
                logger.debug("Cache put failed: %s", e)
        if key not in self._local and len(self._local) >= self._max_local:
            self._prune_local()
        self._local[key] = (time.monotonic() + ttl, raw)

    def _prune_local(self) -> None:
        """Drop expired entries; if none expired, the oldest entry goes."""
        now = time.monotonic()
        expired = [k for k, (expires_at, _) in self._local.items() if expires_at < now]
        for k in expired:
            del self._local[k]
        if not expired and self._local:
            del self._local[next(iter(self._local))]

    async def delete(self, uri: str) -> None:
        """Forget the mirror data for a URI."""
        key = self.key(uri)
        self._local.pop(key, None)
        if await self._ensure_connected():
            try:
                await self._redis.delete(key)
            except Exception as e:
                logger.debug("Cache delete failed: %s", e)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.debug("Cache close failed: %s", e)
            self._redis = None
            self._connected = False
