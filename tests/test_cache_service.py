from __future__ import annotations

import uuid

from commission_engine.services.cache_service import CacheService, InMemoryCache


async def test_settlement_key_includes_namespace_and_tenant(cache) -> None:
    tenant_id = uuid.uuid4()
    await cache.set_idempotent(tenant_id, "ORD-1", {"success": True})

    assert await cache.backend.get(f"test:{tenant_id}:settlement:ORD-1") == {"success": True}


async def test_same_transaction_id_is_isolated_per_tenant(cache) -> None:
    acme, globex = uuid.uuid4(), uuid.uuid4()

    await cache.set_idempotent(acme, "ORD-1", {"owner": "acme"})

    assert await cache.get_idempotent(globex, "ORD-1") is None
    assert await cache.get_idempotent(acme, "ORD-1") == {"owner": "acme"}


async def test_zero_ttl_expires_immediately() -> None:
    cache = CacheService(InMemoryCache(), namespace="test")

    await cache.set("t", "k", {"v": 1}, ttl=0)

    assert await cache.get("t", "k") is None


async def test_explicit_zero_ttl_is_not_replaced_by_default(cache) -> None:
    tenant_id = uuid.uuid4()

    await cache.set_idempotent(tenant_id, "ORD-1", {"n": 1}, ttl=0)

    assert await cache.get_idempotent(tenant_id, "ORD-1") is None


async def test_returned_value_is_a_copy(cache) -> None:
    tenant_id = uuid.uuid4()
    await cache.set_idempotent(tenant_id, "ORD-1", {"records": [1, 2]})

    first = await cache.get_idempotent(tenant_id, "ORD-1")
    first["records"].append(3)

    assert await cache.get_idempotent(tenant_id, "ORD-1") == {"records": [1, 2]}


async def test_invalidate_single_settlement(cache) -> None:
    tenant_id = uuid.uuid4()
    await cache.set_idempotent(tenant_id, "ORD-1", {"n": 1})
    await cache.set_idempotent(tenant_id, "ORD-2", {"n": 2})

    assert await cache.invalidate_settlement(tenant_id, "ORD-1") == 1

    assert await cache.get_idempotent(tenant_id, "ORD-1") is None
    assert await cache.get_idempotent(tenant_id, "ORD-2") == {"n": 2}


async def test_invalidate_all_settlements_of_one_tenant(cache) -> None:
    acme, globex = uuid.uuid4(), uuid.uuid4()
    await cache.set_idempotent(acme, "ORD-1", {"n": 1})
    await cache.set_idempotent(acme, "ORD-2", {"n": 2})
    await cache.set_idempotent(globex, "ORD-1", {"n": 3})

    assert await cache.invalidate_settlement(acme) == 2

    assert await cache.get_idempotent(acme, "ORD-2") is None
    assert await cache.get_idempotent(globex, "ORD-1") == {"n": 3}


async def test_clear_tenant_cache(cache) -> None:
    tenant_id = uuid.uuid4()
    await cache.set(str(tenant_id), "stats:p1", {"n": 1})
    await cache.set_idempotent(tenant_id, "ORD-1", {"n": 2})

    assert await cache.clear_tenant_cache(str(tenant_id)) == 2


async def test_cleanup_expired_entries() -> None:
    backend = InMemoryCache()
    await backend.set("a", 1, ttl=0)
    await backend.set("b", 2, ttl=60)

    assert await backend.cleanup_expired() == 1
    assert await backend.get("b") == 2
