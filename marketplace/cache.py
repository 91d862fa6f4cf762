import json
import logging
from typing import Awaitable, Callable

import redis.asyncio as redis

from marketplace.config import settings

logger = logging.getLogger(__name__)

Payload = dict | list


class CatalogCache:
    """
    Redis cache-aside store for the public service catalog.

    Only catalog reads are cached.  Balances, bookings and ledger entries
    always come from the database so no response carries a stale balance.

    Redis is optional: with no connection every lookup is a miss served
    by the loader, and writes are skipped.  Redis errors are counted and
    logged, never raised to the request.
    """

    prefix = "services"

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits = 0
        self._misses = 0
        self._errors = 0

    async def connect(self) -> None:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await client.ping()
        except Exception as exc:
            logger.warning("Redis unreachable at %s, catalog cache disabled: %s", settings.REDIS_URL, exc)
            await client.aclose()
            return
        self._redis = client
        logger.info("Catalog cache connected: %s", settings.REDIS_URL)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    # --- keys ---

    @classmethod
    def list_key(cls, page: int, page_size: int, sort_by: str, sort_order: str,
                 provider_id: int | None) -> str:
        return f"{cls.prefix}:list:{page}:{page_size}:{sort_by}:{sort_order}:{provider_id}"

    @classmethod
    def detail_key(cls, service_id: int) -> str:
        return f"{cls.prefix}:detail:{service_id}"

    # --- cache-aside ---

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Payload | None]],
        ttl: int,
    ) -> Payload | None:
        """
        Return the cached value for *key*, or call *loader* and cache what
        it returns.  A loader result of None is not cached.
        """
        cached = await self._read(key)
        if cached is not None:
            self._hits += 1
            return cached
        self._misses += 1
        value = await loader()
        if value is not None:
            await self._write(key, value, ttl)
        return value

    async def invalidate(self, service_id: int | None = None) -> None:
        """Drop every list page, plus the detail entry of *service_id*."""
        if self._redis is None:
            return
        try:
            keys = [k async for k in self._redis.scan_iter(match=f"{self.prefix}:list:*")]
            if service_id is not None:
                keys.append(self.detail_key(service_id))
            if keys:
                await self._redis.delete(*keys)
        except Exception as exc:
            self._errors += 1
            logger.warning("Catalog cache invalidation failed: %s", exc)

    async def _read(self, key: str) -> Payload | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            self._errors += 1
            logger.debug("Cache read failed for %r: %s", key, exc)
            return None
        return json.loads(raw) if raw is not None else None

    async def _write(self, key: str, value: Payload, ttl: int) -> None:
        if self._redis is None:
            return
        try:
            # Decimal prices and datetimes serialise as strings.
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except Exception as exc:
            self._errors += 1
            logger.debug("Cache write failed for %r: %s", key, exc)

    @property
    def stats(self) -> dict:
        lookups = self._hits + self._misses
        return {
            "enabled": self._redis is not None,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / lookups * 100, 1) if lookups else 0.0,
        }


cache = CatalogCache()
