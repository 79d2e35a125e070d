"""
On-demand (manual) sync gateway.

One accepted manual trigger per user per window, shared across that user's
integrations. Excess requests are rejected, never queued. Accepted triggers
bypass the circuit breaker and never touch adaptive state or next_run_at.
"""

from datetime import datetime
from typing import Protocol

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.domain.errors import RateLimitedError
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    SyncJobRun,
    SyncTrigger,
)
from syncwatch.features.sync_orchestration.services.sync_scheduler import (
    SyncScheduler,
    sync_scheduler,
)
from syncwatch.infrastructure.observability.logging import get_logger
from syncwatch.middleware.rate_limiter import RateLimiter, rate_limiter

logger = get_logger(__name__)


class ManualSyncLimiter(Protocol):
    async def check_manual_sync_limit(self, user_id: str) -> tuple[bool, dict]: ...


class OnDemandGateway:
    def __init__(
        self,
        scheduler: SyncScheduler | None = None,
        limiter: ManualSyncLimiter | RateLimiter | None = None,
    ):
        self.scheduler = scheduler or sync_scheduler
        self.limiter = limiter or rate_limiter

    async def trigger(self, integration: Integration, now: datetime | None = None) -> SyncJobRun:
        """
        Run a manual sync for the integration.

        Raises:
            RateLimitedError: the user already triggered a manual sync in this window
        """
        allowed, info = await self.limiter.check_manual_sync_limit(integration.user_id)
        if not allowed:
            retry_after = int(info.get("retry_after") or settings.MANUAL_SYNC_WINDOW_SECONDS)
            logger.info(
                "Manual sync rate limited",
                user_id=integration.user_id,
                integration_type=integration.integration_type.value,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                retry_after=retry_after,
                limit=int(info.get("limit") or settings.MANUAL_SYNC_LIMIT_PER_WINDOW),
                window_seconds=int(
                    info.get("window_seconds") or settings.MANUAL_SYNC_WINDOW_SECONDS
                ),
            )

        return await self.scheduler.run_sync(
            integration, SyncTrigger.MANUAL, bypass=True, now=now
        )


on_demand_gateway = OnDemandGateway()
