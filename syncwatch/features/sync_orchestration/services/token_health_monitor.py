"""
Token health monitor.

Classifies the stored credential for an integration before any sync work.
Confirmed invalidity blocks syncing (fail closed); transport failures only
mark the status unknown and never block (fail open).
"""

from datetime import UTC, datetime, timedelta

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    SyncApiClient,
    TokenValidation,
    sync_api_client,
)
from syncwatch.features.sync_orchestration.domain.models import (
    EventType,
    Integration,
    SyncEvent,
    TokenHealth,
    TokenStatus,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.features.sync_orchestration.services.event_publisher import (
    EventPublisher,
    event_publisher,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EXPIRY_WARNING_WINDOW = timedelta(hours=24)

# Statuses the user must act on. Entering a blocking one from any status,
# or expiring_soon from valid, notifies them.
USER_ACTIONABLE_STATUSES = frozenset(
    {
        TokenStatus.EXPIRING_SOON,
        TokenStatus.EXPIRED,
        TokenStatus.REVOKED,
        TokenStatus.REQUIRES_REAUTH,
    }
)


class TokenHealthMonitor:
    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        api_client: SyncApiClient | None = None,
        publisher: EventPublisher | None = None,
        monitor_interval: timedelta | None = None,
    ):
        self.repository = repository or sync_state_repository
        self.api_client = api_client or sync_api_client
        self.publisher = publisher or event_publisher
        self.monitor_interval = monitor_interval or timedelta(
            minutes=settings.TOKEN_MONITOR_INTERVAL_MINUTES
        )

    def needs_validation(self, stored: TokenHealth | None, now: datetime) -> bool:
        if stored is None or stored.status == TokenStatus.UNKNOWN:
            return True
        if now - stored.checked_at >= self.monitor_interval:
            return True
        expiry = stored.expiry_timestamp
        return expiry is not None and expiry - now <= EXPIRY_WARNING_WINDOW

    async def check_health(self, integration: Integration, now: datetime | None = None) -> TokenHealth:
        now = now or datetime.now(UTC)
        stored = await self.repository.get_token_health(integration)

        # Terminal statuses only clear through refresh or reconnect
        if stored is not None and stored.status.blocks_sync:
            return stored

        if not self.needs_validation(stored, now):
            return stored

        health = await self._validate(integration, stored, now)
        return await self.record(integration, health, previous=stored)

    async def _validate(
        self, integration: Integration, stored: TokenHealth | None, now: datetime
    ) -> TokenHealth:
        expiry = stored.expiry_timestamp if stored else None

        if expiry is not None and expiry <= now:
            return TokenHealth(
                status=TokenStatus.EXPIRED,
                checked_at=now,
                expiry_timestamp=expiry,
                error_message="Access token expired",
            )

        try:
            validation = await self.api_client.validate_token(integration)
        except Exception as e:
            logger.warning(
                "Token validation call failed",
                user_id=integration.user_id,
                integration_type=integration.integration_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TokenHealth(
                status=TokenStatus.UNKNOWN,
                checked_at=now,
                expiry_timestamp=expiry,
                error_message=f"{type(e).__name__}: {e}",
            )

        if validation.result == TokenValidation.INVALID_GRANT:
            return TokenHealth(
                status=TokenStatus.REVOKED,
                checked_at=now,
                expiry_timestamp=expiry,
                error_message=validation.error_message or "invalid_grant",
            )

        if validation.result == TokenValidation.TRANSIENT_ERROR:
            return TokenHealth(
                status=TokenStatus.UNKNOWN,
                checked_at=now,
                expiry_timestamp=expiry,
                error_message=validation.error_message,
            )

        expiry = validation.expiry_timestamp or expiry
        if expiry is not None and expiry <= now:
            status = TokenStatus.EXPIRED
        elif expiry is not None and expiry - now <= EXPIRY_WARNING_WINDOW:
            status = TokenStatus.EXPIRING_SOON
        else:
            status = TokenStatus.VALID
        return TokenHealth(status=status, checked_at=now, expiry_timestamp=expiry)

    async def mark_revoked(
        self, integration: Integration, reason: str, now: datetime | None = None
    ) -> TokenHealth:
        """Record invalidity reported by a sync job rather than a validation call."""
        now = now or datetime.now(UTC)
        stored = await self.repository.get_token_health(integration)
        health = TokenHealth(
            status=TokenStatus.REVOKED,
            checked_at=now,
            expiry_timestamp=stored.expiry_timestamp if stored else None,
            error_message=reason,
        )
        return await self.record(integration, health, previous=stored)

    async def record(
        self, integration: Integration, health: TokenHealth, previous: TokenHealth | None
    ) -> TokenHealth:
        """Persist with compare-and-set; emits token_health_changed when the user must act."""
        applied = await self.repository.save_token_health(integration, health)
        if not applied:
            current = await self.repository.get_token_health(integration)
            return current or health

        if previous is not None and previous.status != health.status:
            logger.info(
                "Token health changed",
                user_id=integration.user_id,
                integration_type=integration.integration_type.value,
                from_status=previous.status.value,
                to_status=health.status.value,
            )

        if self._should_notify(previous, health):
            self.publisher.publish(
                SyncEvent(
                    event_type=EventType.TOKEN_HEALTH_CHANGED,
                    user_id=integration.user_id,
                    integration_type=integration.integration_type,
                    timestamp=health.checked_at,
                    details={
                        "previous_status": previous.status.value if previous else None,
                        "status": health.status.value,
                        "expiry_timestamp": (
                            health.expiry_timestamp.isoformat() if health.expiry_timestamp else None
                        ),
                        "error_message": health.error_message,
                    },
                )
            )

        return health

    @staticmethod
    def _should_notify(previous: TokenHealth | None, health: TokenHealth) -> bool:
        if health.status not in USER_ACTIONABLE_STATUSES:
            return False
        if previous is None:
            return health.status.blocks_sync
        if previous.status == health.status:
            return False
        return previous.status == TokenStatus.VALID or health.status.blocks_sync


token_health_monitor = TokenHealthMonitor()
