"""
Per-integration execution locks.

Sync execution, webhook registration, renewal and disconnect for the same
integration are serialized across every process (API and workers) by a
Redis lease: SET NX PX with a random token, released by compare-and-delete.
A process-local asyncio.Lock sits in front of the lease so coroutines in the
same process queue locally instead of polling Redis.

The lease TTL must outlive the longest hold (job timeout plus persistence);
a crashed holder's lease expires on its own. When Redis is unreachable the
lease cannot be taken and IntegrationBusyError is raised (fail closed).
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.domain.errors import IntegrationBusyError
from syncwatch.features.sync_orchestration.domain.models import Integration
from syncwatch.infrastructure.observability.logging import get_logger
from syncwatch.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

LEASE_KEY_PREFIX = "lease:integration"
LEASE_POLL_INTERVAL_SECONDS = 0.1


def lease_key(integration: Integration) -> str:
    return f"{LEASE_KEY_PREFIX}:{integration.user_id}:{integration.integration_type.value}"


class IntegrationLease(Protocol):
    async def acquire(self, integration: Integration) -> str: ...

    async def release(self, integration: Integration, token: str) -> None: ...


class RedisLease:
    def __init__(
        self,
        redis_client: FastRedisClient | None = None,
        ttl_seconds: float | None = None,
        acquire_timeout_seconds: float | None = None,
        poll_interval_seconds: float = LEASE_POLL_INTERVAL_SECONDS,
    ):
        self.redis = redis_client or fast_redis
        self.ttl_seconds = ttl_seconds or settings.SYNC_LEASE_TTL_SECONDS
        self.acquire_timeout_seconds = (
            acquire_timeout_seconds or settings.SYNC_LEASE_ACQUIRE_TIMEOUT_SECONDS
        )
        self.poll_interval_seconds = poll_interval_seconds

    async def acquire(self, integration: Integration) -> str:
        """
        Wait for the lease and return its token.

        Raises:
            IntegrationBusyError: still held elsewhere after the acquire timeout,
                or Redis is unavailable
        """
        key = lease_key(integration)
        token = uuid.uuid4().hex
        ttl_ms = int(self.ttl_seconds * 1000)
        deadline = time.monotonic() + self.acquire_timeout_seconds

        while True:
            acquired = await self.redis.set_if_absent(key, token, ttl_ms)
            if acquired is None:
                raise IntegrationBusyError("Lease store unavailable", integration_key=key)
            if acquired:
                return token
            if time.monotonic() >= deadline:
                logger.warning(
                    "Integration lease still held, giving up",
                    lease_key=key,
                    waited_seconds=self.acquire_timeout_seconds,
                )
                raise IntegrationBusyError("Integration is busy in another process", key)
            await asyncio.sleep(self.poll_interval_seconds)

    async def release(self, integration: Integration, token: str) -> None:
        key = lease_key(integration)
        released = await self.redis.delete_if_equals(key, token)
        if not released:
            # Expired and possibly re-taken elsewhere
            logger.warning("Integration lease was not held at release", lease_key=key)


class IntegrationLocks:
    def __init__(self, lease: IntegrationLease | None = None):
        self.lease = lease
        self._locks: dict[Integration, asyncio.Lock] = {}

    def get(self, integration: Integration) -> asyncio.Lock:
        lock = self._locks.get(integration)
        if lock is None:
            lock = self._locks[integration] = asyncio.Lock()
        return lock

    def is_locked(self, integration: Integration) -> bool:
        lock = self._locks.get(integration)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, integration: Integration) -> AsyncIterator[None]:
        async with self.get(integration):
            if self.lease is None:
                yield
                return

            token = await self.lease.acquire(integration)
            try:
                yield
            finally:
                await self.lease.release(integration, token)

    def discard(self, integration: Integration) -> None:
        """Forget an idle local lock after disconnect."""
        lock = self._locks.get(integration)
        if lock is not None and not lock.locked():
            del self._locks[integration]


integration_locks = IntegrationLocks(lease=RedisLease())
