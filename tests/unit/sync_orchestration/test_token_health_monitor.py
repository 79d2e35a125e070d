from datetime import timedelta

import pytest

from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    TokenValidation,
    ValidationResult,
)
from syncwatch.features.sync_orchestration.domain.errors import TransientApiError
from syncwatch.features.sync_orchestration.domain.models import (
    EventType,
    TokenHealth,
    TokenStatus,
)


def _stale(repo, integration, now, status=TokenStatus.VALID, expiry=None):
    repo.token_health[integration] = TokenHealth(
        status=status,
        checked_at=now - timedelta(hours=2),
        expiry_timestamp=expiry or now + timedelta(days=10),
    )


@pytest.mark.asyncio
async def test_recent_valid_record_skips_validation(monitor, repo, api, calendar, now):
    repo.connect(calendar, now=now)

    health = await monitor.check_health(calendar, now + timedelta(minutes=10))

    assert health.status == TokenStatus.VALID
    assert api.call_count("validate_token") == 0


@pytest.mark.asyncio
async def test_missing_record_is_validated_and_stored(monitor, repo, api, calendar, now):
    api.validation = ValidationResult(TokenValidation.VALID, expiry_timestamp=now + timedelta(days=5))

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.VALID
    assert repo.token_health[calendar].expiry_timestamp == now + timedelta(days=5)
    assert api.call_count("validate_token") == 1


@pytest.mark.asyncio
async def test_invalid_grant_marks_revoked_and_notifies(
    monitor, repo, api, publisher, calendar, now
):
    _stale(repo, calendar, now)
    api.validation = ValidationResult(TokenValidation.INVALID_GRANT, error_message="invalid_grant")

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.REVOKED
    assert health.status.blocks_sync
    events = publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)
    assert len(events) == 1
    assert events[0].details["previous_status"] == "valid"
    assert events[0].details["status"] == "revoked"


@pytest.mark.asyncio
async def test_transient_validation_error_fails_open(monitor, repo, api, publisher, calendar, now):
    _stale(repo, calendar, now)
    api.validation = ValidationResult(TokenValidation.TRANSIENT_ERROR, error_message="503")

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.UNKNOWN
    assert not health.status.blocks_sync
    assert publisher.events == []


@pytest.mark.asyncio
async def test_validation_exception_fails_open(monitor, repo, api, calendar, now):
    _stale(repo, calendar, now)
    api.validate_error = TransientApiError("connection reset")

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.UNKNOWN
    assert "connection reset" in health.error_message


@pytest.mark.asyncio
async def test_past_expiry_is_expired_without_api_call(monitor, repo, api, calendar, now):
    _stale(repo, calendar, now, expiry=now - timedelta(minutes=1))

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.EXPIRED
    assert api.call_count("validate_token") == 0


@pytest.mark.asyncio
async def test_blocking_status_is_sticky(monitor, repo, api, calendar, now):
    _stale(repo, calendar, now, status=TokenStatus.REQUIRES_REAUTH)

    health = await monitor.check_health(calendar, now + timedelta(days=1))

    assert health.status == TokenStatus.REQUIRES_REAUTH
    assert api.call_count("validate_token") == 0


@pytest.mark.asyncio
async def test_expiry_within_a_day_is_expiring_soon(monitor, repo, api, publisher, calendar, now):
    _stale(repo, calendar, now, expiry=now + timedelta(hours=6))

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.EXPIRING_SOON
    assert not health.status.blocks_sync
    assert len(publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)) == 1


@pytest.mark.asyncio
async def test_stale_write_loses_to_newer_record(monitor, repo, calendar, now):
    repo.token_health[calendar] = TokenHealth(status=TokenStatus.VALID, checked_at=now)
    older = TokenHealth(status=TokenStatus.REVOKED, checked_at=now - timedelta(minutes=5))

    stored = await monitor.record(calendar, older, previous=None)

    assert stored.status == TokenStatus.VALID
    assert repo.token_health[calendar].status == TokenStatus.VALID


@pytest.mark.asyncio
async def test_mark_revoked_keeps_expiry(monitor, repo, calendar, now):
    repo.connect(calendar, now=now - timedelta(minutes=1))

    health = await monitor.mark_revoked(calendar, "401 from provider", now)

    assert health.status == TokenStatus.REVOKED
    assert health.expiry_timestamp == repo.token_health[calendar].expiry_timestamp


@pytest.mark.asyncio
async def test_unknown_to_revoked_notifies(monitor, repo, api, publisher, calendar, now):
    _stale(repo, calendar, now, status=TokenStatus.UNKNOWN)
    api.validation = ValidationResult(TokenValidation.INVALID_GRANT, error_message="invalid_grant")

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.REVOKED
    events = publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)
    assert [(e.details["previous_status"], e.details["status"]) for e in events] == [
        ("unknown", "revoked")
    ]


@pytest.mark.asyncio
async def test_expiring_soon_to_expired_notifies(monitor, repo, publisher, calendar, now):
    _stale(repo, calendar, now, status=TokenStatus.EXPIRING_SOON, expiry=now - timedelta(minutes=1))

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.EXPIRED
    assert len(publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)) == 1


@pytest.mark.asyncio
async def test_unknown_to_expiring_soon_does_not_notify(monitor, repo, publisher, calendar, now):
    _stale(repo, calendar, now, status=TokenStatus.UNKNOWN, expiry=now + timedelta(hours=6))

    health = await monitor.check_health(calendar, now)

    assert health.status == TokenStatus.EXPIRING_SOON
    assert publisher.events == []


@pytest.mark.asyncio
async def test_first_record_in_blocking_status_notifies(monitor, repo, publisher, calendar, now):
    health = TokenHealth(status=TokenStatus.REVOKED, checked_at=now)

    await monitor.record(calendar, health, previous=None)

    events = publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)
    assert len(events) == 1
    assert events[0].details["previous_status"] is None
