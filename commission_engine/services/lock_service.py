"""
Lease-based mutual exclusion for settlement.

One lock per idempotency key, i.e. per (tenant_id, transaction_id).
Unrelated transactions never contend, even within a tenant.

Every lock is a lease: it expires after ``ttl`` seconds even if the holder
crashed without releasing it. Release only succeeds for the holder's own
token, so a slow holder whose lease already expired cannot delete a lock
that someone else has since acquired.

Supports:
1. Redis (SET NX PX + compare-and-delete), required with multiple workers
2. In-memory fallback (single process: development/testing)

Usage:
    locks = get_lock_service()

    async with locks.hold(f"settlement:{tenant_id}:{txn_id}", ttl=30, wait=10):
        ...

    result = await locks.with_lock(key, ttl=30, fn=settle)
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from commission_engine.config import settings

logger = logging.getLogger(__name__)


class LockAcquisitionTimeout(Exception):
    """The lock was still held by someone else when the wait ran out."""

    def __init__(self, key: str, waited: float):
        super().__init__(f"Lock '{key}' not acquired within {waited:.2f}s")
        self.key = key
        self.waited = waited


class LockBackendError(Exception):
    """The lock backend itself failed (e.g. Redis unreachable)."""


class LockBackend(ABC):
    """Abstract lock backend interface."""

    @abstractmethod
    async def acquire(self, key: str, token: str, ttl: float) -> bool:
        """Try once to take the lease. Returns False if someone else holds it."""
        pass

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it."""
        pass


class InMemoryLockBackend(LockBackend):
    """Process-local leases for development and tests."""

    def __init__(self):
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, key: str, token: str, ttl: float) -> bool:
        async with self._lock:
            now = time.monotonic()
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return False
            if current is not None:
                logger.warning(f"Reclaiming expired lock lease: {key}")
            self._leases[key] = (token, now + ttl)
            return True

    async def release(self, key: str, token: str) -> bool:
        async with self._lock:
            current = self._leases.get(key)
            if current is None or current[0] != token:
                return False
            del self._leases[key]
            return True

    async def is_locked(self, key: str) -> bool:
        async with self._lock:
            current = self._leases.get(key)
            return current is not None and current[1] > time.monotonic()


# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLockBackend(LockBackend):
    """Redis leases shared by every worker."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def acquire(self, key: str, token: str, ttl: float) -> bool:
        try:
            client = await self._get_client()
            acquired = await client.set(key, token, nx=True, px=max(1, int(ttl * 1000)))
            return bool(acquired)
        except Exception as e:
            raise LockBackendError(f"Redis lock acquire failed for {key}: {e}") from e

    async def release(self, key: str, token: str) -> bool:
        try:
            client = await self._get_client()
            released = await client.eval(_RELEASE_SCRIPT, 1, key, token)
            return bool(released)
        except Exception as e:
            raise LockBackendError(f"Redis lock release failed for {key}: {e}") from e


class LockService:
    """Acquire/hold/release leases on top of a LockBackend."""

    def __init__(self, backend: LockBackend, namespace: str = "commission:lock"):
        self._backend = backend
        self._namespace = namespace

    @property
    def backend(self) -> LockBackend:
        return self._backend

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl: Optional[float] = None,
        wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        """
        Hold the lease for ``key`` for the duration of the block.

        Raises:
            LockAcquisitionTimeout: still held elsewhere after ``wait`` seconds
            LockBackendError: the backend could not be reached
        """
        ttl = ttl if ttl is not None else settings.SETTLEMENT_LOCK_TTL
        wait = wait if wait is not None else settings.SETTLEMENT_LOCK_WAIT
        poll_interval = poll_interval if poll_interval is not None else settings.SETTLEMENT_LOCK_POLL_INTERVAL

        full_key = self._make_key(key)
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + wait

        while not await self._backend.acquire(full_key, token, ttl):
            now = loop.time()
            if now >= deadline:
                raise LockAcquisitionTimeout(key, now - started)
            await asyncio.sleep(min(poll_interval, deadline - now))

        try:
            yield token
        finally:
            try:
                released = await self._backend.release(full_key, token)
                if not released:
                    logger.warning(f"Lock lease for {key} expired before release")
            except LockBackendError as e:
                # The lease still expires on its own
                logger.warning(f"Could not release lock {key}: {e}")

    async def with_lock(
        self,
        key: str,
        ttl: Optional[float],
        fn: Callable[[], Awaitable[Any]],
        wait: Optional[float] = None,
    ) -> Any:
        """Run ``fn()`` while holding the lease for ``key``."""
        async with self.hold(key, ttl=ttl, wait=wait):
            return await fn()


# Singleton lock service
_lock_instance: Optional[LockService] = None


def get_lock_service() -> LockService:
    """Get the lock service singleton."""
    global _lock_instance

    if _lock_instance is None:
        if settings.REDIS_URL:
            backend = RedisLockBackend(settings.REDIS_URL)
            logger.info("Settlement locks use Redis backend")
        else:
            backend = InMemoryLockBackend()
            logger.info("Settlement locks use in-memory backend")

        _lock_instance = LockService(backend, namespace=f"{settings.CACHE_NAMESPACE}:lock")

    return _lock_instance


def reset_lock_service() -> None:
    global _lock_instance
    _lock_instance = None
