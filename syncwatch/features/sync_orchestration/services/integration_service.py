"""
Connect and disconnect integrations.

Connecting stores encrypted credentials, seeds breaker and schedule rows and,
for calendar, attempts a webhook registration. Disconnecting runs under the
integration lock so no sync or renewal can race the removal.
"""

from datetime import UTC, datetime

from syncwatch.features.sync_orchestration.domain.errors import IntegrationBusyError
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    IntegrationCredentials,
    IntegrationType,
    WebhookSubscription,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.features.sync_orchestration.services.locks import (
    IntegrationLocks,
    integration_locks,
)
from syncwatch.features.sync_orchestration.services.webhook_manager import (
    WebhookManager,
    webhook_manager,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class IntegrationService:
    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        webhooks: WebhookManager | None = None,
        locks: IntegrationLocks | None = None,
    ):
        self.repository = repository or sync_state_repository
        self.webhooks = webhooks or webhook_manager
        self.locks = locks or integration_locks

    async def connect(
        self,
        integration: Integration,
        credentials: IntegrationCredentials,
        now: datetime | None = None,
    ) -> WebhookSubscription | None:
        now = now or datetime.now(UTC)
        async with self.locks.hold(integration):
            await self.repository.create_integration(integration, credentials, now)

        if integration.integration_type != IntegrationType.CALENDAR:
            return None
        try:
            return await self.webhooks.register(integration, now)
        except IntegrationBusyError as e:
            # Same fallback as a failed registration: polling only
            logger.warning(
                "Webhook registration deferred, integration busy",
                user_id=integration.user_id,
                error=str(e),
            )
            return None

    async def disconnect(self, integration: Integration) -> bool:
        async with self.locks.hold(integration):
            if integration.integration_type == IntegrationType.CALENDAR:
                await self.webhooks.drop_subscription(integration.user_id)
            removed = await self.repository.delete_integration(integration)
        self.locks.discard(integration)
        return removed


integration_service = IntegrationService()
