"""
Sync orchestration API request/response models.
Used by the feature router for input validation and output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from syncwatch.features.sync_orchestration.domain.models import IntegrationType, SyncJobRun


class ManualSyncRequest(BaseModel):
    """Request body for an on-demand sync."""

    integration_type: IntegrationType = Field(..., description="Integration to sync now")


class SyncRunResponse(BaseModel):
    """Outcome of a single sync run."""

    integration_type: IntegrationType = Field(..., description="Integration that was synced")
    trigger: str = Field(..., description="What started the run: scheduled, webhook or manual")
    outcome: str = Field(..., description="success, failure or skipped")
    skip_reason: str | None = Field(None, description="Why the run was skipped")
    error_kind: str | None = Field(None, description="Failure classification")
    error_message: str | None = Field(None, description="Failure detail")
    items_applied: int = Field(0, description="Number of changes applied")
    changed: bool = Field(False, description="Did the provider report any change")
    started_at: datetime = Field(..., description="Run start time")
    ended_at: datetime = Field(..., description="Run end time")
    duration_ms: float = Field(..., description="Run duration in milliseconds")

    @classmethod
    def from_run(cls, run: SyncJobRun) -> "SyncRunResponse":
        return cls(
            integration_type=run.integration.integration_type,
            trigger=run.trigger.value,
            outcome=run.outcome.value,
            skip_reason=run.skip_reason.value if run.skip_reason else None,
            error_kind=run.error_kind.value if run.error_kind else None,
            error_message=run.error_message,
            items_applied=run.items_applied,
            changed=run.changed,
            started_at=run.started_at,
            ended_at=run.ended_at,
            duration_ms=round(run.duration_ms, 2),
        )


class ConnectIntegrationRequest(BaseModel):
    """Credentials obtained by the OAuth flow for a newly connected integration."""

    access_token: str = Field(..., min_length=1, description="OAuth access token")
    refresh_token: str | None = Field(None, description="OAuth refresh token")
    expires_at: datetime | None = Field(None, description="Access token expiry")


class ConnectIntegrationResponse(BaseModel):
    """Response after connecting an integration."""

    success: bool = Field(..., description="Whether the integration was stored")
    integration_type: IntegrationType = Field(..., description="Connected integration")
    webhook_active: bool = Field(False, description="Is a push subscription registered")
    webhook_expires_at: datetime | None = Field(None, description="Push subscription expiry")
    message: str = Field(..., description="Human-readable status")


class DisconnectIntegrationResponse(BaseModel):
    """Response after disconnecting an integration."""

    success: bool = Field(..., description="Whether anything was removed")
    integration_type: IntegrationType = Field(..., description="Disconnected integration")
    message: str = Field(..., description="Human-readable status")


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the push provider."""

    received: bool = Field(True, description="Delivery was received")
    result: str = Field(..., description="accepted, rejected or ignored")


class ApiCallsSaved(BaseModel):
    by_circuit_breaker: int = Field(..., description="Runs skipped while the breaker was open")
    by_token_check: int = Field(..., description="Runs skipped for an unusable token")
    total: int = Field(..., description="Total provider calls avoided")


class PersistentFailure(BaseModel):
    user_id: str = Field(..., description="Affected user")
    integration_type: str = Field(..., description="Affected integration")
    last_successful_sync: datetime | None = Field(None, description="Last successful sync")
    failure_count: int = Field(..., description="Consecutive failures")
    last_error: str | None = Field(None, description="Most recent failure reason")


class SyncHealthResponse(BaseModel):
    """System-wide sync health metrics for the admin dashboard."""

    generated_at: datetime = Field(..., description="When the snapshot was taken")
    total_integrations: int = Field(..., description="Connected integrations across all types")
    active_integrations: dict[str, int] = Field(..., description="Connected integrations per type")
    invalid_tokens: dict[str, int] = Field(..., description="Unusable tokens per type")
    open_circuit_breakers: dict[str, int] = Field(..., description="Open breakers per type")
    sync_success_rate_24h: dict[str, float | None] = Field(
        ..., description="Success percentage per type over 24h; null without attempts"
    )
    api_calls_saved_24h: ApiCallsSaved = Field(..., description="Provider calls avoided over 24h")
    webhook_triggered_runs_24h: int = Field(..., description="Runs started by push notifications")
    webhook_notifications_24h: dict[str, int] = Field(
        ..., description="Push deliveries over 24h by result: accepted, rejected, ignored"
    )
    persistent_failures: list[PersistentFailure] = Field(
        ..., description="Integrations without a successful sync for 7+ days"
    )


class UserSyncStatusResponse(BaseModel):
    """Per-integration sync snapshot for one user."""

    user_id: str = Field(..., description="User the snapshot belongs to")
    integrations: dict[str, dict[str, Any]] = Field(
        ..., description="Snapshot keyed by integration type"
    )


class BreakerResetResponse(BaseModel):
    """Response after an admin breaker reset."""

    success: bool = Field(..., description="Reset applied")
    user_id: str = Field(..., description="Affected user")
    integration_type: IntegrationType = Field(..., description="Affected integration")
    status: str = Field(..., description="Breaker status after the reset")
    message: str = Field(..., description="Human-readable status")
