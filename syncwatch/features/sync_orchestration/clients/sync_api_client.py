"""
Third-party API boundary.

SyncApiClient is the contract the orchestrator depends on. HttpSyncApiClient
implements it against the provider gateway at SYNC_API_BASE_URL and
classifies every failure as TokenInvalidError or TransientApiError so
callers never see raw HTTP errors.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.domain.errors import (
    TokenInvalidError,
    TransientApiError,
)
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    IntegrationCredentials,
    WebhookSubscription,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30
MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
INVALID_GRANT_ERRORS = {"invalid_grant", "invalid_token", "unauthorized_client"}


class TokenValidation(str, Enum):
    VALID = "valid"
    INVALID_GRANT = "invalid_grant"
    TRANSIENT_ERROR = "transient_error"


@dataclass(slots=True)
class ValidationResult:
    result: TokenValidation
    expiry_timestamp: datetime | None = None
    error_message: str | None = None


@dataclass(slots=True)
class SyncResult:
    changed: bool
    items_applied: int = 0


@dataclass(slots=True)
class WatchChannel:
    channel_id: str
    resource_id: str
    expires_at: datetime


class SyncApiClient(Protocol):
    async def validate_token(self, integration: Integration) -> ValidationResult: ...

    async def refresh_token(
        self, integration: Integration, credentials: IntegrationCredentials
    ) -> IntegrationCredentials: ...

    async def run_incremental_sync(self, integration: Integration) -> SyncResult: ...

    async def register_watch(self, integration: Integration) -> WatchChannel: ...

    async def renew_watch(self, subscription: WebhookSubscription) -> WatchChannel: ...

    async def stop_watch(self, subscription: WebhookSubscription) -> None: ...


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class HttpSyncApiClient:
    """httpx implementation of SyncApiClient."""

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.SYNC_API_BASE_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.SYNC_API_TOKEN
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        url = f"{self.base_url}{path}"
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Sync API retrying request",
                        path=path,
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise TransientApiError(
                        f"Sync API request failed: {type(e).__name__}: {e}", operation=path
                    ) from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Sync API request error, retrying",
                    path=path,
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise TransientApiError("Sync API retry loop exhausted", operation=path)

    def _handle_response(self, response: httpx.Response, operation: str) -> dict:
        """Return the JSON body or raise the classified error."""
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise TransientApiError(
                    f"Invalid response format: {e}", operation=operation
                ) from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}

        error_code = str(error_data.get("error", "")).lower()
        message = error_data.get("error_description") or error_data.get("message") or response.text

        logger.warning(
            "Sync API call failed",
            operation=operation,
            status_code=response.status_code,
            error_code=error_code or None,
        )

        if response.status_code == 401 or error_code in INVALID_GRANT_ERRORS:
            raise TokenInvalidError(
                f"{operation} rejected credentials: {error_code or message}",
                operation=operation,
                status="revoked",
            )

        raise TransientApiError(
            f"{operation} failed with HTTP {response.status_code}: {message}",
            operation=operation,
            status_code=response.status_code,
        )

    def _path(self, integration: Integration, action: str) -> str:
        return f"/v1/integrations/{integration.integration_type.value}/{action}"

    async def validate_token(self, integration: Integration) -> ValidationResult:
        try:
            response = await self._request_with_retry(
                "POST", self._path(integration, "validate"), json={"user_id": integration.user_id}
            )
            data = self._handle_response(response, "validate_token")
        except TokenInvalidError as e:
            return ValidationResult(TokenValidation.INVALID_GRANT, error_message=str(e))
        except TransientApiError as e:
            return ValidationResult(TokenValidation.TRANSIENT_ERROR, error_message=str(e))

        result = TokenValidation(data.get("result", TokenValidation.VALID.value))
        return ValidationResult(
            result=result,
            expiry_timestamp=_parse_timestamp(data.get("expires_at")),
            error_message=data.get("error_message"),
        )

    async def refresh_token(
        self, integration: Integration, credentials: IntegrationCredentials
    ) -> IntegrationCredentials:
        response = await self._request_with_retry(
            "POST",
            self._path(integration, "refresh"),
            json={"user_id": integration.user_id, "refresh_token": credentials.refresh_token},
        )
        data = self._handle_response(response, "refresh_token")
        if not data.get("access_token"):
            raise TransientApiError("Refresh response missing access_token", operation="refresh_token")
        return IntegrationCredentials(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or credentials.refresh_token,
            expiry_timestamp=_parse_timestamp(data.get("expires_at")),
        )

    async def run_incremental_sync(self, integration: Integration) -> SyncResult:
        response = await self._request_with_retry(
            "POST", self._path(integration, "sync"), json={"user_id": integration.user_id}
        )
        data = self._handle_response(response, "run_incremental_sync")
        return SyncResult(
            changed=bool(data.get("changed", False)),
            items_applied=int(data.get("items_applied", 0)),
        )

    def _watch_channel(self, data: dict, operation: str) -> WatchChannel:
        try:
            channel_id = data["channel_id"]
            resource_id = data["resource_id"]
            expires_at = _parse_timestamp(data["expires_at"])
        except (KeyError, ValueError) as e:
            raise TransientApiError(f"Malformed watch response: {e}", operation=operation) from e
        if expires_at is None:
            raise TransientApiError("Watch response has no expiry", operation=operation)
        return WatchChannel(channel_id=channel_id, resource_id=resource_id, expires_at=expires_at)

    async def register_watch(self, integration: Integration) -> WatchChannel:
        response = await self._request_with_retry(
            "POST",
            self._path(integration, "watch"),
            json={"user_id": integration.user_id, "address": settings.CALENDAR_WEBHOOK_URL},
        )
        return self._watch_channel(self._handle_response(response, "register_watch"), "register_watch")

    async def renew_watch(self, subscription: WebhookSubscription) -> WatchChannel:
        response = await self._request_with_retry(
            "POST",
            self._path(subscription.integration, "watch/renew"),
            json={
                "user_id": subscription.user_id,
                "channel_id": subscription.channel_id,
                "resource_id": subscription.resource_id,
                "address": settings.CALENDAR_WEBHOOK_URL,
            },
        )
        return self._watch_channel(self._handle_response(response, "renew_watch"), "renew_watch")

    async def stop_watch(self, subscription: WebhookSubscription) -> None:
        response = await self._request_with_retry(
            "POST",
            self._path(subscription.integration, "watch/stop"),
            json={
                "user_id": subscription.user_id,
                "channel_id": subscription.channel_id,
                "resource_id": subscription.resource_id,
            },
        )
        self._handle_response(response, "stop_watch")


# Shared client for the API process and workers
sync_api_client = HttpSyncApiClient()
