from datetime import timedelta

import pytest

from syncwatch.features.sync_orchestration.clients.sync_api_client import WatchChannel
from syncwatch.features.sync_orchestration.domain.errors import TransientApiError
from syncwatch.features.sync_orchestration.domain.models import (
    NotificationResult,
    WebhookSubscription,
)
from syncwatch.features.sync_orchestration.services.webhook_manager import WebhookManager


@pytest.fixture
def manager(repo, api, locks):
    return WebhookManager(repository=repo, api_client=api, locks=locks)


def _subscription(now, user_id="user-123", expires_in=timedelta(days=5)):
    return WebhookSubscription(
        user_id=user_id,
        channel_id="channel-1",
        resource_id="resource-1",
        expires_at=now + expires_in,
        registered_at=now,
    )


@pytest.mark.asyncio
async def test_register_stores_subscription(manager, repo, api, calendar, now):
    subscription = await manager.register(calendar, now)

    assert subscription.channel_id == "channel-1"
    assert repo.subscriptions["user-123"].resource_id == "resource-1"
    assert api.call_count("register_watch") == 1


@pytest.mark.asyncio
async def test_register_is_calendar_only(manager, api, contacts, now):
    assert await manager.register(contacts, now) is None
    assert api.calls == []


@pytest.mark.asyncio
async def test_register_failure_falls_back_to_polling(manager, repo, api, calendar, now):
    api.watch_result = TransientApiError("watch endpoint down")

    assert await manager.register(calendar, now) is None
    assert repo.subscriptions == {}


@pytest.mark.asyncio
async def test_renew_skips_subscriptions_not_yet_due(manager, repo, api, calendar, now):
    repo.subscriptions["user-123"] = _subscription(now, expires_in=timedelta(days=3))

    current = await manager.renew(calendar, now)

    assert current.channel_id == "channel-1"
    assert api.call_count("renew_watch") == 0


@pytest.mark.asyncio
async def test_renew_supersedes_subscription_within_a_day_of_expiry(
    manager, repo, api, calendar, now
):
    repo.subscriptions["user-123"] = _subscription(now, expires_in=timedelta(hours=20))

    renewed = await manager.renew(calendar, now)

    assert renewed.channel_id == "channel-2"
    assert repo.subscriptions["user-123"].channel_id == "channel-2"
    assert await repo.find_subscription_by_channel("channel-1") is None


@pytest.mark.asyncio
async def test_failed_renewal_drops_subscription(manager, repo, api, calendar, now):
    repo.subscriptions["user-123"] = _subscription(now, expires_in=timedelta(hours=2))
    api.renew_result = TransientApiError("boom")

    assert await manager.renew(calendar, now) is None
    assert repo.subscriptions == {}


@pytest.mark.asyncio
async def test_renew_expiring_isolates_failures(manager, repo, api, now):
    repo.subscriptions["user-a"] = _subscription(now, "user-a", timedelta(hours=2))
    repo.subscriptions["user-b"] = WebhookSubscription(
        user_id="user-b",
        channel_id="channel-b",
        resource_id="resource-b",
        expires_at=now + timedelta(hours=3),
        registered_at=now,
    )
    repo.subscriptions["user-c"] = _subscription(now, "user-c", timedelta(days=4))

    async def renew_watch(subscription):
        if subscription.user_id == "user-a":
            raise TransientApiError("boom")
        return WatchChannel("channel-b2", subscription.resource_id, now + timedelta(days=7))

    api.renew_watch = renew_watch

    summary = await manager.renew_expiring(now)

    assert summary == {"checked": 2, "renewed": 1, "dropped": 1, "errors": 0}
    assert "user-a" not in repo.subscriptions
    assert repo.subscriptions["user-b"].channel_id == "channel-b2"
    assert repo.subscriptions["user-c"].channel_id == "channel-1"


@pytest.mark.asyncio
async def test_matching_notification_is_accepted(manager, repo, calendar, now):
    repo.subscriptions["user-123"] = _subscription(now)

    decision = await manager.handle_notification("channel-1", "resource-1", "exists", now)

    assert decision.result == NotificationResult.ACCEPTED
    assert decision.should_sync
    assert decision.integration == calendar


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("channel_id", "resource_id"),
    [
        ("channel-1", "someone-else"),
        ("unknown", "resource-1"),
        (None, "resource-1"),
        ("channel-1", None),
    ],
)
async def test_mismatched_notification_is_rejected(manager, repo, now, channel_id, resource_id):
    repo.subscriptions["user-123"] = _subscription(now)

    decision = await manager.handle_notification(channel_id, resource_id, "exists", now)

    assert decision.result == NotificationResult.REJECTED
    assert not decision.should_sync
    assert decision.integration is None


@pytest.mark.asyncio
async def test_expired_subscription_rejects_notifications(manager, repo, now):
    repo.subscriptions["user-123"] = _subscription(now, expires_in=timedelta(days=1))

    decision = await manager.handle_notification(
        "channel-1", "resource-1", "exists", now + timedelta(days=2)
    )

    assert decision.result == NotificationResult.REJECTED


@pytest.mark.asyncio
async def test_sync_handshake_is_ignored(manager, repo, now):
    repo.subscriptions["user-123"] = _subscription(now)

    decision = await manager.handle_notification("channel-1", "resource-1", "sync", now)

    assert decision.result == NotificationResult.IGNORED
    assert not decision.should_sync


@pytest.mark.asyncio
async def test_every_delivery_is_recorded_with_its_result(manager, repo, now):
    repo.subscriptions["user-123"] = _subscription(now)

    await manager.handle_notification("channel-1", "resource-1", "exists", now)
    await manager.handle_notification("channel-1", "resource-1", "sync", now)
    await manager.handle_notification("unknown", "resource-1", "exists", now)

    assert [(n["result"], n["reason"], n["user_id"]) for n in repo.notifications] == [
        (NotificationResult.ACCEPTED, None, "user-123"),
        (NotificationResult.IGNORED, "handshake", "user-123"),
        (NotificationResult.REJECTED, "Unknown channel", None),
    ]
    assert all(n["received_at"] == now for n in repo.notifications)


@pytest.mark.asyncio
async def test_recording_failure_does_not_change_the_decision(manager, repo, now):
    repo.subscriptions["user-123"] = _subscription(now)

    async def broken(*args, **kwargs):
        raise RuntimeError("db gone")

    repo.record_notification = broken

    decision = await manager.handle_notification("channel-1", "resource-1", "exists", now)

    assert decision.result == NotificationResult.ACCEPTED


@pytest.mark.asyncio
async def test_disconnect_stops_channel_and_forgets_it(manager, repo, api, calendar, now):
    repo.subscriptions["user-123"] = _subscription(now)

    assert await manager.disconnect(calendar) is True
    assert api.call_count("stop_watch") == 1
    assert repo.subscriptions == {}
