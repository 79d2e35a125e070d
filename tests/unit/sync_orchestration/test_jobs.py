from datetime import timedelta

import pytest

from syncwatch.features.sync_orchestration.clients.sync_api_client import SyncResult
from syncwatch.features.sync_orchestration.domain.errors import TransientApiError
from syncwatch.features.sync_orchestration.domain.models import (
    EventType,
    IntegrationType,
    SyncEvent,
)
from syncwatch.features.sync_orchestration.jobs.event_drain_job import EventDrainJob
from syncwatch.features.sync_orchestration.jobs.sync_tick_job import SyncTickJob
from syncwatch.features.sync_orchestration.jobs.token_refresh_job import TokenRefreshJob
from syncwatch.features.sync_orchestration.jobs.webhook_renewal_job import WebhookRenewalJob
from syncwatch.features.sync_orchestration.services.event_publisher import (
    EVENTS_LIST_KEY,
    QueueEventPublisher,
)
from syncwatch.features.sync_orchestration.services.token_refresh_service import (
    TokenRefreshService,
)
from syncwatch.features.sync_orchestration.services.webhook_manager import WebhookManager


@pytest.mark.asyncio
async def test_sync_tick_job_aggregates_outcomes(scheduler, repo, api, calendar, contacts, now):
    repo.connect(calendar, now=now)
    repo.connect(contacts, now=now)
    api.sync_results = [SyncResult(changed=True, items_applied=1), TransientApiError("503")]
    job = SyncTickJob(scheduler=scheduler, interval_seconds=60)

    metrics = await job.run_once(now)

    assert metrics["integrations_due"] == 2
    assert metrics["succeeded"] == 1
    assert metrics["failed"] == 1
    assert metrics["success_rate_percent"] == 50.0
    assert job.get_job_status()["last_run_time"] is not None
    assert job.health_check()["healthy"] is True


@pytest.mark.asyncio
async def test_job_skips_when_already_running(scheduler):
    job = SyncTickJob(scheduler=scheduler, interval_seconds=60)
    job.is_running = True

    assert await job.run_once() == {"skipped": True, "reason": "already_running"}


@pytest.mark.asyncio
async def test_token_refresh_job_counts_results(repo, api, monitor, audit, calendar, now):
    repo.connect(calendar, now=now, expiry=now + timedelta(hours=47))
    service = TokenRefreshService(repository=repo, api_client=api, monitor=monitor, audit=audit)
    job = TokenRefreshJob(service=service, interval_hours=6)

    metrics = await job.run_once(now)

    assert metrics["integrations_processed"] == 1
    assert metrics["tokens_refreshed"] == 1
    assert metrics["success_rate_percent"] == 100.0
    assert repo.token_health[calendar].expiry_timestamp == now + timedelta(days=7)


@pytest.mark.asyncio
async def test_webhook_renewal_job_reports_summary(repo, api, locks, now):
    job = WebhookRenewalJob(
        manager=WebhookManager(repository=repo, api_client=api, locks=locks), interval_minutes=60
    )

    metrics = await job.run_once(now)

    assert metrics["checked"] == 0
    assert metrics["job_run"] == "webhook_renewal"


@pytest.mark.asyncio
async def test_event_drain_job_empties_queue(fake_redis, now):
    publisher = QueueEventPublisher(redis_client=fake_redis)
    for user_id in ("a", "b", "c"):
        publisher.publish(
            SyncEvent(EventType.BREAKER_CLOSED, user_id, IntegrationType.CONTACTS, now)
        )
    job = EventDrainJob(publisher=publisher)

    result = await job.run_once()

    assert result["delivered"] == 3
    assert result["pending"] == 0
    assert len(fake_redis.lists[EVENTS_LIST_KEY]) == 3
