from datetime import timedelta

import pytest

from syncwatch.features.sync_orchestration.domain.errors import TokenInvalidError
from syncwatch.features.sync_orchestration.domain.models import (
    EventType,
    IntegrationCredentials,
    TokenStatus,
)
from syncwatch.features.sync_orchestration.services.token_refresh_service import (
    OUTCOME_MISSING_REFRESH_TOKEN,
    OUTCOME_REFRESH_FAILED,
    OUTCOME_REFRESHED,
    TokenRefreshService,
)


@pytest.fixture
def service(repo, api, monitor, audit):
    return TokenRefreshService(repository=repo, api_client=api, monitor=monitor, audit=audit)


@pytest.mark.asyncio
async def test_refreshes_tokens_expiring_within_48_hours(
    service, repo, api, audit, calendar, contacts, now
):
    repo.connect(calendar, now=now, expiry=now + timedelta(hours=30))
    repo.connect(contacts, now=now, expiry=now + timedelta(days=5))

    outcomes = await service.refresh_expiring(now)

    assert [o.integration for o in outcomes] == [calendar]
    assert outcomes[0].outcome == OUTCOME_REFRESHED
    assert repo.credentials[calendar].access_token == "new-access"
    assert repo.token_health[calendar].status == TokenStatus.VALID
    assert repo.token_health[calendar].expiry_timestamp == now + timedelta(days=7)
    assert audit.entries[0][3] == OUTCOME_REFRESHED


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauth(service, repo, api, audit, calendar, now):
    repo.connect(calendar, now=now, expiry=now + timedelta(hours=1))
    repo.credentials[calendar] = IntegrationCredentials(access_token="a", refresh_token=None)

    outcomes = await service.refresh_expiring(now)

    assert outcomes[0].outcome == OUTCOME_MISSING_REFRESH_TOKEN
    assert repo.token_health[calendar].status == TokenStatus.REQUIRES_REAUTH
    assert api.call_count("refresh_token") == 0
    assert audit.entries[0][3] == OUTCOME_MISSING_REFRESH_TOKEN


@pytest.mark.asyncio
async def test_refresh_failure_requires_reauth(service, repo, api, audit, calendar, now):
    repo.connect(calendar, now=now, expiry=now + timedelta(hours=1))
    api.refresh_result = TokenInvalidError("invalid_grant")

    outcomes = await service.refresh_expiring(now)

    assert outcomes[0].outcome == OUTCOME_REFRESH_FAILED
    assert not outcomes[0].succeeded
    assert repo.token_health[calendar].status == TokenStatus.REQUIRES_REAUTH
    assert repo.credentials[calendar].access_token == "access"


@pytest.mark.asyncio
async def test_expiring_soon_refresh_failure_notifies_user(
    service, repo, api, publisher, calendar, now
):
    repo.connect(
        calendar, now=now, token_status=TokenStatus.EXPIRING_SOON, expiry=now + timedelta(hours=6)
    )
    api.refresh_result = TokenInvalidError("invalid_grant")

    await service.refresh_expiring(now)

    events = publisher.of_type(EventType.TOKEN_HEALTH_CHANGED)
    assert [(e.details["previous_status"], e.details["status"]) for e in events] == [
        ("expiring_soon", "requires_reauth")
    ]


@pytest.mark.asyncio
async def test_requires_reauth_is_not_retried(service, repo, api, calendar, now):
    repo.connect(
        calendar, now=now, token_status=TokenStatus.REQUIRES_REAUTH, expiry=now + timedelta(hours=1)
    )

    outcomes = await service.refresh_expiring(now)

    assert outcomes == []
    assert api.call_count("refresh_token") == 0


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_the_scan(service, repo, api, calendar, contacts, now):
    repo.connect(calendar, now=now, expiry=now + timedelta(hours=1))
    repo.connect(contacts, now=now, expiry=now + timedelta(hours=2))

    original = api.refresh_token

    async def flaky_refresh(integration, credentials):
        if integration == calendar:
            raise RuntimeError("socket closed")
        return await original(integration, credentials)

    api.refresh_token = flaky_refresh

    outcomes = await service.refresh_expiring(now)

    by_integration = {o.integration: o for o in outcomes}
    assert by_integration[calendar].outcome == OUTCOME_REFRESH_FAILED
    assert by_integration[contacts].outcome == OUTCOME_REFRESHED
