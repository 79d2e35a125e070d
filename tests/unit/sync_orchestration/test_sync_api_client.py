import json
from datetime import UTC, datetime

import httpx
import pytest

from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    HttpSyncApiClient,
    TokenValidation,
)
from syncwatch.features.sync_orchestration.domain.errors import (
    TokenInvalidError,
    TransientApiError,
)


def _client(handler):
    transport = httpx.MockTransport(handler)
    return HttpSyncApiClient(
        base_url="https://sync.test",
        api_token="service-token",
        client=httpx.AsyncClient(transport=transport),
    )


def _watch_payload(**overrides):
    payload = {
        "channel_id": "channel-1",
        "resource_id": "resource-1",
        "expires_at": "2026-03-09T12:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_register_watch_parses_channel(calendar):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_watch_payload())

    channel = await _client(handler).register_watch(calendar)

    assert channel.channel_id == "channel-1"
    assert channel.expires_at == datetime(2026, 3, 9, 12, 0, tzinfo=UTC)
    assert seen["path"] == "/v1/integrations/calendar/watch"
    assert seen["auth"] == "Bearer service-token"
    assert seen["body"]["user_id"] == "user-123"


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_at", [None, ""])
async def test_register_watch_without_expiry_is_transient(calendar, expires_at):
    def handler(request):
        return httpx.Response(200, json=_watch_payload(expires_at=expires_at))

    with pytest.raises(TransientApiError, match="no expiry"):
        await _client(handler).register_watch(calendar)


@pytest.mark.asyncio
async def test_register_watch_missing_field_is_transient(calendar):
    def handler(request):
        return httpx.Response(200, json={"channel_id": "channel-1"})

    with pytest.raises(TransientApiError, match="Malformed watch response"):
        await _client(handler).register_watch(calendar)


@pytest.mark.asyncio
async def test_rejected_credentials_raise_token_invalid(calendar):
    def handler(request):
        return httpx.Response(401, json={"error": "invalid_grant"})

    with pytest.raises(TokenInvalidError):
        await _client(handler).run_incremental_sync(calendar)


@pytest.mark.asyncio
async def test_validate_token_maps_invalid_grant(calendar):
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    validation = await _client(handler).validate_token(calendar)

    assert validation.result == TokenValidation.INVALID_GRANT
