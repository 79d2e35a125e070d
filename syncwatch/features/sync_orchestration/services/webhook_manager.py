"""
Calendar webhook subscription lifecycle.

none -> registered -> renewed (superseding) -> none on disconnect or a
failed renewal. Without a live subscription the scheduler keeps polling at
the default interval. Registration, renewal and disconnect run under the
same per-integration lock as sync execution.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    SyncApiClient,
    sync_api_client,
)
from syncwatch.features.sync_orchestration.domain.errors import (
    SubscriptionRenewalError,
    WebhookValidationError,
)
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    IntegrationType,
    NotificationResult,
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
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RENEWAL_MARGIN = timedelta(hours=24)
MAX_CONCURRENT_RENEWALS = 5

# Google sends this once per new channel; it carries no change
SYNC_HANDSHAKE_STATE = "sync"


@dataclass(slots=True)
class NotificationDecision:
    result: NotificationResult
    integration: Integration | None = None
    reason: str | None = None

    @property
    def should_sync(self) -> bool:
        return self.result == NotificationResult.ACCEPTED


class WebhookManager:
    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        api_client: SyncApiClient | None = None,
        locks: IntegrationLocks | None = None,
    ):
        self.repository = repository or sync_state_repository
        self.api_client = api_client or sync_api_client
        self.locks = locks or integration_locks

    @staticmethod
    def renewal_due(subscription: WebhookSubscription, now: datetime) -> bool:
        return now >= subscription.expires_at - RENEWAL_MARGIN

    async def register(
        self, integration: Integration, now: datetime | None = None
    ) -> WebhookSubscription | None:
        """Register a watch channel; on failure the integration stays on polling."""
        if integration.integration_type != IntegrationType.CALENDAR:
            return None

        now = now or datetime.now(UTC)
        async with self.locks.hold(integration):
            existing = await self.repository.get_subscription(integration.user_id)
            if existing is not None and not self.renewal_due(existing, now):
                return existing

            try:
                channel = await self.api_client.register_watch(integration)
            except Exception as e:
                logger.warning(
                    "Webhook registration failed, falling back to polling",
                    user_id=integration.user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return None

            subscription = WebhookSubscription(
                user_id=integration.user_id,
                channel_id=channel.channel_id,
                resource_id=channel.resource_id,
                expires_at=channel.expires_at,
                registered_at=now,
            )
            await self.repository.save_subscription(subscription)

        logger.info(
            "Webhook registered",
            user_id=integration.user_id,
            channel_id=subscription.channel_id,
            expires_at=subscription.expires_at.isoformat(),
        )
        return subscription

    async def renew(
        self, integration: Integration, now: datetime | None = None
    ) -> WebhookSubscription | None:
        """
        Renew the live subscription once it is within 24h of expiry.

        Returns the live subscription afterwards, or None when renewal failed
        and the subscription was dropped.
        """
        now = now or datetime.now(UTC)
        async with self.locks.hold(integration):
            current = await self.repository.get_subscription(integration.user_id)
            if current is None:
                return None
            if not self.renewal_due(current, now):
                return current

            try:
                channel = await self.api_client.renew_watch(current)
            except Exception as e:
                error = SubscriptionRenewalError(
                    f"Watch renewal failed: {type(e).__name__}: {e}", channel_id=current.channel_id
                )
                await self.repository.delete_subscription(current.user_id)
                logger.warning(
                    "Webhook renewal failed, subscription dropped; polling continues",
                    user_id=current.user_id,
                    channel_id=error.channel_id,
                    error=str(error),
                )
                return None

            renewed = WebhookSubscription(
                user_id=current.user_id,
                channel_id=channel.channel_id,
                resource_id=channel.resource_id,
                expires_at=channel.expires_at,
                registered_at=now,
            )
            await self.repository.save_subscription(renewed)

        logger.info(
            "Webhook renewed",
            user_id=renewed.user_id,
            previous_channel_id=current.channel_id,
            channel_id=renewed.channel_id,
            expires_at=renewed.expires_at.isoformat(),
        )
        return renewed

    async def renew_expiring(self, now: datetime | None = None) -> dict:
        """Renew every subscription expiring within the margin, isolating failures."""
        now = now or datetime.now(UTC)
        expiring = await self.repository.list_expiring_subscriptions(now + RENEWAL_MARGIN)
        summary = {"checked": len(expiring), "renewed": 0, "dropped": 0, "errors": 0}
        if not expiring:
            return summary

        semaphore = asyncio.Semaphore(MAX_CONCURRENT_RENEWALS)

        async def _guarded(subscription: WebhookSubscription):
            async with semaphore:
                return await self.renew(subscription.integration, now)

        results = await asyncio.gather(
            *(_guarded(subscription) for subscription in expiring), return_exceptions=True
        )

        for subscription, result in zip(expiring, results, strict=True):
            if isinstance(result, BaseException):
                summary["errors"] += 1
                logger.error(
                    "Webhook renewal crashed",
                    user_id=subscription.user_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
            elif result is None:
                summary["dropped"] += 1
            else:
                summary["renewed"] += 1

        return summary

    async def drop_subscription(self, user_id: str) -> bool:
        """Stop and forget the channel. Caller must hold the integration lock."""
        subscription = await self.repository.get_subscription(user_id)
        if subscription is None:
            return False
        try:
            await self.api_client.stop_watch(subscription)
        except Exception as e:
            # The channel expires on its own; the local record is what gates syncs
            logger.warning(
                "Failed to stop watch channel", user_id=user_id, error=str(e)
            )
        return await self.repository.delete_subscription(user_id)

    async def disconnect(self, integration: Integration) -> bool:
        async with self.locks.hold(integration):
            dropped = await self.drop_subscription(integration.user_id)
        logger.info("Webhook disconnected", user_id=integration.user_id, dropped=dropped)
        return dropped

    async def handle_notification(
        self,
        channel_id: str | None,
        resource_id: str | None,
        resource_state: str | None = None,
        now: datetime | None = None,
    ) -> NotificationDecision:
        """Accept only deliveries whose channel and resource both match the live subscription."""
        now = now or datetime.now(UTC)
        decision = await self._decide(channel_id, resource_id, resource_state, now)
        await self._record(channel_id, decision, now)
        return decision

    async def _decide(
        self,
        channel_id: str | None,
        resource_id: str | None,
        resource_state: str | None,
        now: datetime,
    ) -> NotificationDecision:
        try:
            subscription = await self._validate(channel_id, resource_id, now)
        except WebhookValidationError as e:
            logger.warning(
                "Webhook notification rejected",
                channel_id=channel_id,
                resource_state=resource_state,
                reason=str(e),
            )
            return NotificationDecision(NotificationResult.REJECTED, reason=str(e))

        if resource_state == SYNC_HANDSHAKE_STATE:
            logger.info("Webhook handshake acknowledged", user_id=subscription.user_id)
            return NotificationDecision(
                NotificationResult.IGNORED, integration=subscription.integration, reason="handshake"
            )

        return NotificationDecision(NotificationResult.ACCEPTED, integration=subscription.integration)

    async def _record(
        self, channel_id: str | None, decision: NotificationDecision, now: datetime
    ) -> None:
        """Store the delivery for dashboard counts; never fails the acknowledgement."""
        try:
            await self.repository.record_notification(
                channel_id,
                decision.result,
                now,
                reason=decision.reason,
                user_id=decision.integration.user_id if decision.integration else None,
            )
        except Exception as e:
            logger.error(
                "Failed to record webhook notification",
                channel_id=channel_id,
                result=decision.result.value,
                error=str(e),
            )

    async def _validate(
        self, channel_id: str | None, resource_id: str | None, now: datetime
    ) -> WebhookSubscription:
        if not channel_id or not resource_id:
            raise WebhookValidationError("Missing channel or resource identifier", channel_id)

        subscription = await self.repository.find_subscription_by_channel(channel_id)
        if subscription is None:
            raise WebhookValidationError("Unknown channel", channel_id)
        if subscription.resource_id != resource_id:
            raise WebhookValidationError("Resource identifier mismatch", channel_id)
        if subscription.expires_at <= now:
            raise WebhookValidationError("Subscription expired", channel_id)
        return subscription


webhook_manager = WebhookManager()
