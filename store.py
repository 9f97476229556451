"""
Redis-backed persistence for deployed endpoints.

One JSON document per endpoint lives under ``api/results/{route}``. Reads
return plain dicts; writes that modify an existing record go through
``EndpointStore.update`` which does a WATCH/MULTI/EXEC compare-and-swap so
concurrent writers (deploy, scheduled refresh, config update) cannot
silently overwrite each other.
"""

import copy
import json
import logging
from typing import Any, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import WatchError

from config import settings

logger = logging.getLogger("harvest.store")

RESULTS_PREFIX = "api/results/"
CAS_MAX_ATTEMPTS = 5

Record = dict[str, Any]


class StoreError(Exception):
    """Base class for storage failures."""


class RecordNotFound(StoreError):
    """Raised when a record vanished before a read-modify-write completed."""


class CorruptRecordError(StoreError):
    """Raised when the stored value is not a JSON object."""


class ConcurrentUpdateError(StoreError):
    """Raised when a compare-and-swap keeps losing to other writers."""


# ── Connection lifecycle ─────────────────────────────────────────────────────
_redis: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Return the shared Redis client, creating it on first use."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    """Close the shared Redis client."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis client closed")


def _decode(route: str, raw: str) -> Record:
    try:
        record = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CorruptRecordError(f"Stored data for '{route}' is not valid JSON") from exc
    if not isinstance(record, dict):
        raise CorruptRecordError(f"Stored data for '{route}' is not an object")
    return record


class EndpointStore:
    """CRUD over endpoint records keyed by sanitized route."""

    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    @staticmethod
    def key(route: str) -> str:
        return f"{RESULTS_PREFIX}{route}"

    async def exists(self, route: str) -> bool:
        return bool(await self._redis.exists(self.key(route)))

    async def get_raw(self, route: str) -> Optional[str]:
        return await self._redis.get(self.key(route))

    async def get(self, route: str) -> Optional[Record]:
        """Return the parsed record, ``None`` if absent.

        Raises:
            CorruptRecordError: the stored value cannot be parsed.
        """
        raw = await self.get_raw(route)
        if raw is None:
            return None
        return _decode(route, raw)

    async def create(self, route: str, record: Record) -> bool:
        """Store a new record. Returns ``False`` if the route is already taken."""
        record.setdefault("metadata", {})["version"] = 1
        created = await self._redis.set(self.key(route), json.dumps(record), nx=True)
        return bool(created)

    async def update(self, route: str, mutate: Callable[[Record], Record]) -> Record:
        """Apply ``mutate`` to the current record and write it back atomically.

        ``mutate`` receives a deep copy of the stored record and returns the
        new one. It may run more than once when another writer races us.

        Raises:
            RecordNotFound: the record does not exist (it is never recreated).
            CorruptRecordError: the stored value cannot be parsed.
            ConcurrentUpdateError: every attempt lost the race.
        """
        key = self.key(route)
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise RecordNotFound(f"Endpoint data not found for '{route}'")
                    current = _decode(route, raw)
                    updated = mutate(copy.deepcopy(current))
                    version = int(current.get("metadata", {}).get("version", 0)) + 1
                    updated.setdefault("metadata", {})["version"] = version
                    pipe.multi()
                    pipe.set(key, json.dumps(updated))
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.warning(
                        "Concurrent write on %s (attempt %d/%d), retrying",
                        route, attempt, CAS_MAX_ATTEMPTS,
                    )
        raise ConcurrentUpdateError(f"Gave up updating '{route}' after {CAS_MAX_ATTEMPTS} attempts")

    async def delete(self, route: str) -> bool:
        return bool(await self._redis.delete(self.key(route)))

    async def list_routes(self) -> list[str]:
        """Return every stored route, sorted."""
        routes = []
        async for key in self._redis.scan_iter(match=f"{RESULTS_PREFIX}*"):
            routes.append(key[len(RESULTS_PREFIX):])
        return sorted(routes)
