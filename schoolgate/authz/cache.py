"""Permission cache — principal id → EffectivePermissionSet with a TTL.

Keyed by principal only; tenant scoping is applied at decision time, so
one fill serves checks across every school a principal touches.

Consistency rules:
- ``invalidate`` is the primary mechanism; the TTL only bounds staleness
  where no invalidation reached this process (other instances).
- An invalidation issued while a fill is in flight wins: the in-flight
  result is handed to the callers already waiting on it but is never
  stored, and the next ``get`` starts a fresh read.
- Store errors propagate and are never cached, so a failed read cannot be
  served later as "no permissions".

Usage:
    cache = InMemoryPermissionCache(store, ttl_seconds=300)
    permission_set = await cache.get(principal_id)
    await cache.invalidate(principal_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from schoolgate.authz.schemas import EffectivePermissionSet, PermissionTuple
from schoolgate.models.base import utcnow

if TYPE_CHECKING:
    from schoolgate.config import AuthzSettings

logger = logging.getLogger(__name__)


class PermissionSource(Protocol):
    """Fill source for the cache (the permission store adapter)."""

    async def load_permissions(self, principal_id: uuid.UUID) -> list[PermissionTuple]: ...


class PermissionCache(Protocol):
    """Interface the access-control service depends on."""

    async def get(self, principal_id: uuid.UUID) -> EffectivePermissionSet: ...

    async def invalidate(self, principal_id: uuid.UUID) -> None: ...

    async def clear(self) -> None: ...


@dataclass(frozen=True)
class _Entry:
    permissions: EffectivePermissionSet
    expires_at: float


def _retrieve_exception(fill: asyncio.Future[Any]) -> None:
    # Marks the error as seen when every waiter was cancelled before the fill failed
    if not fill.cancelled():
        fill.exception()


class InMemoryPermissionCache:
    """In-process cache bound to one event loop.

    Dict mutations happen between awaits, so the event loop is the only
    synchronization needed; concurrent misses for the same principal share
    one store read. A fill stores its result only while it is still the
    registered fill for its key; ``invalidate`` and ``clear`` unregister it.
    """

    def __init__(
        self,
        source: PermissionSource,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._ttl = ttl_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Future[EffectivePermissionSet]] = {}

    async def get(self, principal_id: uuid.UUID) -> EffectivePermissionSet:
        key = str(principal_id)
        entry = self._entries.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                return entry.permissions
            del self._entries[key]

        fill = self._inflight.get(key)
        if fill is None:
            fill = asyncio.ensure_future(self._fill(key, principal_id))
            fill.add_done_callback(_retrieve_exception)
            self._inflight[key] = fill
        # Shield so one cancelled caller does not cancel the shared read
        return await asyncio.shield(fill)

    async def invalidate(self, principal_id: uuid.UUID) -> None:
        key = str(principal_id)
        self._entries.pop(key, None)
        self._inflight.pop(key, None)
        logger.debug("Permission cache invalidated for principal %s", key)

    async def clear(self) -> None:
        self._entries.clear()
        self._inflight.clear()
        logger.info("Permission cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_fills(self) -> int:
        return len(self._inflight)

    async def _fill(self, key: str, principal_id: uuid.UUID) -> EffectivePermissionSet:
        current = asyncio.current_task()
        try:
            rows = await self._source.load_permissions(principal_id)
        finally:
            registered = self._inflight.get(key) is current
            if registered:
                del self._inflight[key]

        permissions = EffectivePermissionSet.from_tuples(principal_id, rows, self._wall_clock())
        if self._ttl > 0 and registered:
            self._entries[key] = _Entry(permissions, self._clock() + self._ttl)
        return permissions


# Write the entry only if neither the principal's generation nor the
# cache-wide epoch moved since the fill read them.
_STORE_IF_CURRENT = """
local epoch = redis.call('GET', KEYS[2]) or '0'
local generation = redis.call('GET', KEYS[3]) or '0'
if epoch .. ':' .. generation ~= ARGV[1] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
return 1
"""


class RedisPermissionCache:
    """Shared cache in Redis for deployments that want cross-instance invalidation.

    Keys under ``key_prefix``:
    - ``<id>`` holds the serialized permission set
    - ``gen:<id>`` counts invalidations of one principal
    - ``epoch`` counts ``clear`` calls

    A fill reads both counters before loading from the store and writes
    its result through a check-and-set script, so an invalidation that
    lands while the store read is in flight always wins.

    Redis read/write failures on the fill path degrade to a direct store
    read. Invalidation failures propagate: a revoke that cannot be applied
    must be visible to the caller.
    """

    def __init__(
        self,
        source: PermissionSource,
        redis: Any,
        *,
        ttl_seconds: float = 300.0,
        key_prefix: str = "schoolgate:perms:",
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._redis = redis
        self._ttl = max(1, int(ttl_seconds))
        self._prefix = key_prefix
        self._wall_clock = wall_clock

    def _key(self, principal_id: uuid.UUID) -> str:
        return f"{self._prefix}{principal_id}"

    def _generation_key(self, principal_id: uuid.UUID) -> str:
        return f"{self._prefix}gen:{principal_id}"

    @property
    def _epoch_key(self) -> str:
        return f"{self._prefix}epoch"

    async def get(self, principal_id: uuid.UUID) -> EffectivePermissionSet:
        key = self._key(principal_id)
        cached = await self._read(principal_id, key)
        if cached is not None:
            return cached

        stamp = await self._read_stamp(principal_id)
        rows = await self._source.load_permissions(principal_id)
        permissions = EffectivePermissionSet.from_tuples(principal_id, rows, self._wall_clock())
        if stamp is not None:
            await self._store(principal_id, key, stamp, permissions)
        return permissions

    async def invalidate(self, principal_id: uuid.UUID) -> None:
        await self._redis.incr(self._generation_key(principal_id))
        await self._redis.delete(self._key(principal_id))
        logger.debug("Permission cache invalidated for principal %s", principal_id)

    async def clear(self) -> None:
        await self._redis.incr(self._epoch_key)
        keys = [
            key
            async for key in self._redis.scan_iter(match=f"{self._prefix}*")
            if key != self._epoch_key
        ]
        if keys:
            await self._redis.delete(*keys)
        logger.info("Permission cache cleared (%d keys)", len(keys))

    async def close(self) -> None:
        await self._redis.aclose()

    async def _read(self, principal_id: uuid.UUID, key: str) -> EffectivePermissionSet | None:
        try:
            cached = await self._redis.get(key)
        except Exception:
            logger.warning("Permission cache read failed for %s, reading store", principal_id, exc_info=True)
            return None
        if not cached:
            return None
        try:
            return EffectivePermissionSet.model_validate_json(cached)
        except ValidationError:
            logger.warning("Discarding unreadable permission cache entry for %s", principal_id)
        try:
            await self._redis.delete(key)
        except Exception:
            logger.warning("Could not delete unreadable cache entry for %s", principal_id, exc_info=True)
        return None

    async def _read_stamp(self, principal_id: uuid.UUID) -> str | None:
        """Current ``epoch:generation`` for the principal; None skips the write-back."""
        try:
            epoch, generation = await self._redis.mget(self._epoch_key, self._generation_key(principal_id))
        except Exception:
            logger.warning("Permission cache stamp read failed for %s", principal_id, exc_info=True)
            return None
        return f"{epoch or 0}:{generation or 0}"

    async def _store(
        self,
        principal_id: uuid.UUID,
        key: str,
        stamp: str,
        permissions: EffectivePermissionSet,
    ) -> None:
        try:
            stored = await self._redis.eval(
                _STORE_IF_CURRENT,
                3,
                key,
                self._epoch_key,
                self._generation_key(principal_id),
                stamp,
                permissions.model_dump_json(),
                self._ttl,
            )
        except Exception:
            logger.warning("Permission cache write failed for %s", principal_id, exc_info=True)
            return
        if not stored:
            logger.debug("Permission cache fill for %s superseded by an invalidation", principal_id)


def build_permission_cache(
    source: PermissionSource,
    config: AuthzSettings,
    *,
    redis_url: str | None = None,
) -> PermissionCache:
    """Create the configured cache backend."""
    if config.permission_cache_backend == "redis":
        import redis.asyncio as aioredis

        if not redis_url:
            msg = "redis permission cache selected but no redis_url configured"
            raise ValueError(msg)
        client = aioredis.from_url(redis_url, decode_responses=True)
        logger.info("Using Redis permission cache (ttl=%ss)", config.permission_cache_ttl_seconds)
        return RedisPermissionCache(
            source,
            client,
            ttl_seconds=config.permission_cache_ttl_seconds,
            key_prefix=config.permission_cache_key_prefix,
        )
    logger.info("Using in-memory permission cache (ttl=%ss)", config.permission_cache_ttl_seconds)
    return InMemoryPermissionCache(source, ttl_seconds=config.permission_cache_ttl_seconds)
