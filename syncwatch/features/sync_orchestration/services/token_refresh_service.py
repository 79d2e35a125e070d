"""
Token refresh service.

Scans integrations whose access token expires within 48 hours and refreshes
them ahead of time. A missing refresh credential or a failed refresh moves
the integration to requires_reauth. Every attempt lands in the audit trail.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    SyncApiClient,
    sync_api_client,
)
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    TokenHealth,
    TokenStatus,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.features.sync_orchestration.services.token_health_monitor import (
    TokenHealthMonitor,
    token_health_monitor,
)
from syncwatch.infrastructure.audit import AuditLogger, audit_logger
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REFRESH_WINDOW = timedelta(hours=48)
MAX_CONCURRENT_REFRESHES = 10
REFRESH_TIMEOUT_SECONDS = 30

OUTCOME_REFRESHED = "refreshed"
OUTCOME_MISSING_REFRESH_TOKEN = "missing_refresh_token"
OUTCOME_REFRESH_FAILED = "refresh_failed"


@dataclass(slots=True)
class RefreshOutcome:
    integration: Integration
    outcome: str
    status: TokenStatus
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_REFRESHED


class TokenRefreshService:
    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        api_client: SyncApiClient | None = None,
        monitor: TokenHealthMonitor | None = None,
        audit: AuditLogger | None = None,
        refresh_window: timedelta = REFRESH_WINDOW,
        max_concurrent: int = MAX_CONCURRENT_REFRESHES,
    ):
        self.repository = repository or sync_state_repository
        self.api_client = api_client or sync_api_client
        self.monitor = monitor or token_health_monitor
        self.audit = audit or audit_logger
        self.refresh_window = refresh_window
        self.max_concurrent = max_concurrent

    async def list_candidates(self, now: datetime) -> list[tuple[Integration, TokenHealth]]:
        return await self.repository.list_refresh_candidates(now, self.refresh_window)

    async def refresh_expiring(self, now: datetime | None = None) -> list[RefreshOutcome]:
        """Refresh every candidate; one integration's failure never aborts the scan."""
        now = now or datetime.now(UTC)
        candidates = await self.list_candidates(now)
        if not candidates:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _guarded(integration: Integration, health: TokenHealth) -> RefreshOutcome:
            async with semaphore:
                return await self.refresh_integration(integration, health, now)

        results = await asyncio.gather(
            *(_guarded(integration, health) for integration, health in candidates),
            return_exceptions=True,
        )

        outcomes: list[RefreshOutcome] = []
        for (integration, _), result in zip(candidates, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Token refresh crashed",
                    user_id=integration.user_id,
                    integration_type=integration.integration_type.value,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                outcomes.append(
                    RefreshOutcome(
                        integration=integration,
                        outcome=OUTCOME_REFRESH_FAILED,
                        status=TokenStatus.UNKNOWN,
                        error=f"{type(result).__name__}: {result}",
                    )
                )
            else:
                outcomes.append(result)
        return outcomes

    async def refresh_integration(
        self, integration: Integration, previous: TokenHealth | None, now: datetime
    ) -> RefreshOutcome:
        started = datetime.now(UTC)
        credentials = await self.repository.get_credentials(integration)

        if credentials is None or not credentials.refresh_token:
            await self._require_reauth(integration, previous, now, "No refresh token stored")
            await self.audit.log_token_refresh(
                integration.user_id,
                integration.integration_type.value,
                OUTCOME_MISSING_REFRESH_TOKEN,
            )
            return RefreshOutcome(
                integration=integration,
                outcome=OUTCOME_MISSING_REFRESH_TOKEN,
                status=TokenStatus.REQUIRES_REAUTH,
                duration_ms=self._elapsed_ms(started),
                error="No refresh token stored",
            )

        try:
            refreshed = await asyncio.wait_for(
                self.api_client.refresh_token(integration, credentials),
                timeout=REFRESH_TIMEOUT_SECONDS,
            )
            await self.repository.save_credentials(integration, refreshed, now)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(
                "Token refresh failed",
                user_id=integration.user_id,
                integration_type=integration.integration_type.value,
                error=error,
            )
            await self._require_reauth(integration, previous, now, error)
            await self.audit.log_token_refresh(
                integration.user_id,
                integration.integration_type.value,
                OUTCOME_REFRESH_FAILED,
                error=error,
            )
            return RefreshOutcome(
                integration=integration,
                outcome=OUTCOME_REFRESH_FAILED,
                status=TokenStatus.REQUIRES_REAUTH,
                duration_ms=self._elapsed_ms(started),
                error=error,
            )

        health = TokenHealth(
            status=TokenStatus.VALID,
            checked_at=self._completed_at(now),
            expiry_timestamp=refreshed.expiry_timestamp,
        )
        stored = await self.monitor.record(integration, health, previous=previous)
        await self.audit.log_token_refresh(
            integration.user_id,
            integration.integration_type.value,
            OUTCOME_REFRESHED,
            expires_at=refreshed.expiry_timestamp,
        )
        logger.info(
            "Token refreshed",
            user_id=integration.user_id,
            integration_type=integration.integration_type.value,
            expires_at=refreshed.expiry_timestamp.isoformat() if refreshed.expiry_timestamp else None,
        )
        return RefreshOutcome(
            integration=integration,
            outcome=OUTCOME_REFRESHED,
            status=stored.status,
            duration_ms=self._elapsed_ms(started),
        )

    async def _require_reauth(
        self, integration: Integration, previous: TokenHealth | None, now: datetime, reason: str
    ) -> None:
        health = TokenHealth(
            status=TokenStatus.REQUIRES_REAUTH,
            checked_at=self._completed_at(now),
            expiry_timestamp=previous.expiry_timestamp if previous else None,
            error_message=reason,
        )
        await self.monitor.record(integration, health, previous=previous)

    @staticmethod
    def _completed_at(now: datetime) -> datetime:
        """Outcome timestamp; never earlier than the wall clock so it wins the health CAS."""
        return max(now, datetime.now(UTC))

    @staticmethod
    def _elapsed_ms(started: datetime) -> float:
        return (datetime.now(UTC) - started).total_seconds() * 1000


token_refresh_service = TokenRefreshService()
