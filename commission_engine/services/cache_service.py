"""
Multi-Tenant Cache Service for settlement idempotency.

IMPORTANT: All cache keys MUST include tenant_id. Two tenants may legally
reuse the same transaction_id, and a cached settlement of one tenant must
never be served to the other.

Supports:
1. Redis (preferred for production, shared across workers)
2. In-memory fallback (for development/testing)

The cache is the fast path only. A backend failure degrades to a cache
miss; the ledger's unique constraint is what finally prevents duplicates.

Usage:
    cache = get_cache()

    summary = await cache.get_idempotent(tenant_id, transaction_id)
    if summary is None:
        ...settle...
        await cache.set_idempotent(tenant_id, transaction_id, result_dict)
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from commission_engine.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        pass


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Values are stored as JSON text so callers get an independent copy
    back, the same as with Redis.

    Note: not shared across processes. With more than one worker,
    configure REDIS_URL.
    """

    def __init__(self):
        self._cache: Dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                payload, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    return json.loads(payload)
                del self._cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (json.dumps(value), expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching pattern (simple prefix match)."""
        async with self._lock:
            prefix = pattern.rstrip('*')
            keys_to_delete = [k for k in self._cache.keys() if k.startswith(prefix)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    async def cleanup_expired(self) -> int:
        """Remove expired entries."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [
                k for k, (_, expires_at) in self._cache.items()
                if expires_at <= now
            ]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)


class RedisCache(CacheBackend):
    """Redis cache backend for production."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis GET failed for {key}, treating as miss: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis SET failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis DELETE failed for {key}: {e}")
            return False

    async def clear_pattern(self, pattern: str) -> int:
        try:
            client = await self._get_client()
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await client.scan(cursor, match=pattern, count=100)
                if keys:
                    await client.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
            return deleted
        except Exception as e:
            logger.warning(f"Redis SCAN/DELETE failed for {pattern}: {e}")
            return 0


class CacheService:
    """
    Multi-Tenant Cache Service.

    Cache keys follow the format:

        {namespace}:{tenant_id}:{resource_type}:{identifier}

    Examples:
        commission:7f3c...:settlement:ORD-1001
    """

    def __init__(self, backend: CacheBackend, namespace: str = "commission"):
        self._backend = backend
        self._namespace = namespace

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _make_key(self, tenant_id: str, key: str) -> str:
        """
        Create namespaced, tenant-isolated cache key.

        IMPORTANT: tenant_id MUST be included to prevent cross-tenant leakage.
        """
        if not tenant_id:
            logger.warning(f"Cache key created without tenant_id: {key}")
        return f"{self._namespace}:{tenant_id}:{key}"

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        """Get value from tenant-specific cache."""
        return await self._backend.get(self._make_key(tenant_id, key))

    async def set(self, tenant_id: str, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in tenant-specific cache."""
        return await self._backend.set(self._make_key(tenant_id, key), value, ttl)

    async def delete(self, tenant_id: str, key: str) -> bool:
        """Delete key from tenant-specific cache."""
        return await self._backend.delete(self._make_key(tenant_id, key))

    async def clear_pattern(self, tenant_id: str, pattern: str) -> int:
        """Clear all keys matching pattern for a tenant."""
        return await self._backend.clear_pattern(self._make_key(tenant_id, pattern))

    async def clear_tenant_cache(self, tenant_id: str) -> int:
        """Clear ALL cached data for a tenant."""
        pattern = f"{self._namespace}:{tenant_id}:*"
        return await self._backend.clear_pattern(pattern)

    # ==================== Settlement Idempotency ====================

    def _settlement_key(self, transaction_id: str) -> str:
        """Generate cache key for a settlement (tenant_id added by caller)."""
        return f"settlement:{transaction_id}"

    async def get_idempotent(self, tenant_id, transaction_id: str) -> Optional[dict]:
        """Get the cached settlement summary for a transaction, if any."""
        key = self._settlement_key(transaction_id)
        return await self.get(str(tenant_id), key)

    async def set_idempotent(
        self,
        tenant_id,
        transaction_id: str,
        value: dict,
        ttl: Optional[int] = None
    ) -> bool:
        """Cache a settlement summary under its idempotency key."""
        key = self._settlement_key(transaction_id)
        if ttl is None:
            ttl = settings.SETTLEMENT_CACHE_TTL
        return await self.set(str(tenant_id), key, value, ttl)

    async def invalidate_settlement(self, tenant_id, transaction_id: Optional[str] = None) -> int:
        """Invalidate one cached settlement, or all of a tenant's."""
        if transaction_id:
            deleted = await self.delete(str(tenant_id), self._settlement_key(transaction_id))
            return 1 if deleted else 0
        return await self.clear_pattern(str(tenant_id), "settlement:*")


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL and settings.CACHE_ENABLED:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")

        _cache_instance = CacheService(backend, namespace=settings.CACHE_NAMESPACE)

    return _cache_instance


def reset_cache() -> None:
    """Drop the singleton so the next get_cache() re-reads settings."""
    global _cache_instance
    _cache_instance = None
