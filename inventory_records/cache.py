"""
Read-through query cache on Redis.

Key layout (all under the ``inventory:`` namespace)::

    inventory:item:{id}                      single item, identity-independent
    inventory:list:{scope}:{fingerprint}     list query results
    inventory:stats:{scope}                  aggregate statistics
    inventory:low-stock:{scope}              low-stock list
    inventory:out-of-stock:{scope}           out-of-stock list

``{scope}`` is ``user:{id}`` for owner-scoped callers and ``global`` for
admins. Every entry that depends on who is asking carries the scope, so a
cache hit never needs the ownership plan to be re-applied.

The cache is an accelerant: backend failures are logged and degrade to a
miss (reads) or a no-op (writes, invalidations). Nothing here raises.
"""
import asyncio
import hashlib
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from inventory_records.exceptions import CacheError
from inventory_records.logging_config import get_child_logger
from inventory_records.models.item import Identity, ItemQuery

logger = get_child_logger("cache")

KEY_PREFIX = "inventory"
GLOBAL_SCOPE = "global"

_GLOB_SPECIALS = re.compile(r"([\\*?\[\]])")


class InvalidationScope(str, Enum):
    SINGLE_ITEM = "single-item"
    OWNER_LISTS = "owner-scope-lists"
    OWNER_AGGREGATES = "owner-scope-aggregates"
    GLOBAL = "global-scope"


def owner_scope(user_id: str) -> str:
    return f"user:{user_id}"


def scope_of(identity: Identity) -> str:
    return GLOBAL_SCOPE if identity.is_admin else owner_scope(identity.user_id)


def item_key(item_id: str) -> str:
    return f"{KEY_PREFIX}:item:{item_id}"


def stats_key(scope: str) -> str:
    return f"{KEY_PREFIX}:stats:{scope}"


def low_stock_key(scope: str) -> str:
    return f"{KEY_PREFIX}:low-stock:{scope}"


def out_of_stock_key(scope: str) -> str:
    return f"{KEY_PREFIX}:out-of-stock:{scope}"


def list_pattern(scope: str) -> str:
    escaped = _GLOB_SPECIALS.sub(r"\\\1", scope)
    return f"{KEY_PREFIX}:list:{escaped}:*"


def fingerprint(query: ItemQuery, identity: Identity) -> str:
    """
    Deterministic key for a list query as seen by `identity`.

    Built from the normalized parameters (defaults filled in, page size
    clamped) plus the caller's scope and role, so equivalent requests share
    an entry and callers with different visibility never do.
    """
    scope = scope_of(identity)
    canonical = json.dumps(
        {
            "query": query.normalized().model_dump(mode="json", by_alias=True),
            "scope": scope,
            "role": identity.role.value,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{KEY_PREFIX}:list:{scope}:{digest}"


@dataclass(frozen=True)
class InvalidationPlan:
    keys: FrozenSet[str] = field(default_factory=frozenset)
    patterns: FrozenSet[str] = field(default_factory=frozenset)

    def __or__(self, other: "InvalidationPlan") -> "InvalidationPlan":
        return InvalidationPlan(self.keys | other.keys, self.patterns | other.patterns)


def resolve(
    scopes: Iterable[InvalidationScope],
    item_ids: Iterable[str] = (),
    owner_scopes: Iterable[str] = (),
) -> InvalidationPlan:
    """
    Turn invalidation scopes into the exact keys and glob patterns to delete.
    """
    item_ids = tuple(item_ids)
    owner_scopes = tuple(owner_scopes)
    keys = set()
    patterns = set()

    for scope in scopes:
        if scope is InvalidationScope.SINGLE_ITEM:
            keys.update(item_key(item_id) for item_id in item_ids)
        elif scope is InvalidationScope.OWNER_LISTS:
            for owner in owner_scopes:
                keys.update((low_stock_key(owner), out_of_stock_key(owner)))
                patterns.add(list_pattern(owner))
        elif scope is InvalidationScope.OWNER_AGGREGATES:
            keys.update(stats_key(owner) for owner in owner_scopes)
        elif scope is InvalidationScope.GLOBAL:
            keys.update(
                (
                    stats_key(GLOBAL_SCOPE),
                    low_stock_key(GLOBAL_SCOPE),
                    out_of_stock_key(GLOBAL_SCOPE),
                )
            )
            patterns.add(list_pattern(GLOBAL_SCOPE))

    return InvalidationPlan(frozenset(keys), frozenset(patterns))


class QueryCache:
    def __init__(self, redis: aioredis.Redis, timeout: float = 2.0):
        self.redis = redis
        self.timeout = timeout

    async def _guard(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CacheError(f"Cache {operation} failed: {e!r}", original_exception=e) from e

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or any cache fault."""
        try:
            raw = await self._guard("get", self.redis.get(key))
        except CacheError as e:
            logger.warning(str(e), extra={"cache_key": key})
            return None
        if raw is None:
            logger.debug("Cache miss", extra={"cache_key": key})
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"cache_key": key})
            return None

    async def put(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            await self._guard("set", self.redis.set(key, json.dumps(value), ex=ttl_seconds))
            return True
        except CacheError as e:
            logger.warning(str(e), extra={"cache_key": key})
            return False

    async def invalidate(self, key: str) -> bool:
        try:
            await self._guard("delete", self.redis.delete(key))
            return True
        except CacheError as e:
            logger.warning(str(e), extra={"cache_key": key})
            return False

    async def _delete_matching(self, pattern: str) -> int:
        # SCAN rather than KEYS so large keyspaces don't block the server
        keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
        if keys:
            await self.redis.delete(*keys)
        return len(keys)

    async def invalidate_pattern(self, pattern: str) -> Optional[int]:
        """Delete every key matching a glob. Returns the count, or None on failure."""
        try:
            deleted = await self._guard("delete-pattern", self._delete_matching(pattern))
        except CacheError as e:
            logger.warning(str(e), extra={"cache_pattern": pattern})
            return None
        if deleted:
            logger.info(
                f"Cleared {deleted} cache keys matching pattern: {pattern}",
                extra={"cache_pattern": pattern, "count": deleted},
            )
        return deleted

    async def apply(self, plan: InvalidationPlan) -> bool:
        """Execute an invalidation plan. True only if every step succeeded."""
        ok = True
        for key in sorted(plan.keys):
            ok = await self.invalidate(key) and ok
        for pattern in sorted(plan.patterns):
            ok = (await self.invalidate_pattern(pattern)) is not None and ok
        return ok
