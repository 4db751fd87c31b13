from inventory_records.cache import (
    InvalidationPlan,
    InvalidationScope,
    QueryCache,
    fingerprint,
    item_key,
    list_pattern,
    low_stock_key,
    owner_scope,
    resolve,
    stats_key,
)
from inventory_records.planner import parse_query


def test_fingerprint_is_deterministic_over_equivalent_queries(owner):
    explicit = parse_query({"page": 1, "limit": 10, "sortBy": "createdAt", "sortOrder": "desc"})
    implicit = parse_query({})

    assert fingerprint(explicit, owner) == fingerprint(implicit, owner)
    assert fingerprint(parse_query({"limit": 1000}), owner) == fingerprint(
        parse_query({"limit": 100}), owner
    )


def test_fingerprint_distinguishes_queries_and_callers(owner, other_user, admin):
    query = parse_query({"category": "Books"})

    keys = {
        fingerprint(query, owner),
        fingerprint(query, other_user),
        fingerprint(query, admin),
        fingerprint(parse_query({"category": "Toys & Games"}), owner),
    }
    assert len(keys) == 4
    assert fingerprint(query, owner).startswith("inventory:list:user:user-a:")
    assert fingerprint(query, admin).startswith("inventory:list:global:")


def test_list_pattern_escapes_glob_characters():
    assert list_pattern("user:a*b") == "inventory:list:user:a\\*b:*"


def test_resolve_single_item_only():
    invalidation = resolve([InvalidationScope.SINGLE_ITEM], item_ids=["i1", "i2"])

    assert invalidation.keys == {item_key("i1"), item_key("i2")}
    assert not invalidation.patterns


def test_resolve_owner_and_global_scopes():
    owner = owner_scope("user-a")
    invalidation = resolve(
        [
            InvalidationScope.OWNER_LISTS,
            InvalidationScope.OWNER_AGGREGATES,
            InvalidationScope.GLOBAL,
        ],
        owner_scopes=[owner],
    )

    assert low_stock_key(owner) in invalidation.keys
    assert stats_key(owner) in invalidation.keys
    assert stats_key("global") in invalidation.keys
    assert invalidation.patterns == {list_pattern(owner), list_pattern("global")}


def test_plans_combine():
    combined = InvalidationPlan(frozenset({"a"}), frozenset({"p:*"})) | InvalidationPlan(
        frozenset({"b"})
    )
    assert combined.keys == {"a", "b"}
    assert combined.patterns == {"p:*"}


async def test_put_get_and_ttl(cache, cache_redis):
    assert await cache.get("inventory:item:1") is None

    assert await cache.put("inventory:item:1", {"id": "1"}, ttl_seconds=600) is True

    assert await cache.get("inventory:item:1") == {"id": "1"}
    ttl = await cache_redis.ttl("inventory:item:1")
    assert 0 < ttl <= 600


async def test_undecodable_entry_is_a_miss(cache, cache_redis):
    await cache_redis.set("inventory:item:bad", "{not json")

    assert await cache.get("inventory:item:bad") is None


async def test_pattern_invalidation_only_touches_matching_scope(cache, cache_redis):
    for key in (
        "inventory:list:user:user-a:one",
        "inventory:list:user:user-a:two",
        "inventory:list:user:user-b:one",
        "inventory:list:global:one",
    ):
        await cache_redis.set(key, "[]")

    deleted = await cache.invalidate_pattern(list_pattern(owner_scope("user-a")))

    assert deleted == 2
    remaining = sorted([key async for key in cache_redis.scan_iter(match="inventory:*")])
    assert remaining == ["inventory:list:global:one", "inventory:list:user:user-b:one"]


async def test_apply_runs_every_step(cache, cache_redis):
    await cache_redis.set(item_key("i1"), "{}")
    await cache_redis.set(stats_key("global"), "{}")
    await cache_redis.set("inventory:list:global:abc", "{}")

    ok = await cache.apply(
        resolve(
            [InvalidationScope.SINGLE_ITEM, InvalidationScope.GLOBAL],
            item_ids=["i1"],
        )
    )

    assert ok is True
    assert await cache_redis.dbsize() == 0


async def test_backend_failure_degrades_to_miss(cache_server, cache_redis):
    cache = QueryCache(cache_redis, timeout=1.0)
    await cache.put("inventory:item:1", {"id": "1"}, 60)
    cache_server.connected = False

    assert await cache.get("inventory:item:1") is None
    assert await cache.put("inventory:item:1", {"id": "1"}, 60) is False
    assert await cache.invalidate("inventory:item:1") is False
    assert await cache.invalidate_pattern("inventory:list:*") is None
    assert await cache.apply(resolve([InvalidationScope.SINGLE_ITEM], item_ids=["1"])) is False
