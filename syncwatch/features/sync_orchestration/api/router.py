"""
Sync orchestration routes.

- POST /webhooks/calendar          push notifications (always 200, sync runs in background)
- POST /sync/manual                user-triggered sync, rate limited
- POST/DELETE /integrations/{type} connect / disconnect
- GET  /admin/sync-health          dashboard metrics (admin only)
"""

from datetime import UTC, datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status

from syncwatch.auth.verify import admin_dependency, auth_dependency
from syncwatch.features.sync_orchestration.api.schemas import (
    BreakerResetResponse,
    ConnectIntegrationRequest,
    ConnectIntegrationResponse,
    DisconnectIntegrationResponse,
    ManualSyncRequest,
    SyncHealthResponse,
    SyncRunResponse,
    UserSyncStatusResponse,
    WebhookAckResponse,
)
from syncwatch.features.sync_orchestration.domain.errors import (
    IntegrationBusyError,
    RateLimitedError,
)
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    IntegrationCredentials,
    IntegrationType,
    NotificationResult,
    SkipReason,
    SyncTrigger,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.features.sync_orchestration.services.dashboard_service import (
    DashboardService,
    dashboard_service,
)
from syncwatch.features.sync_orchestration.services.integration_service import (
    IntegrationService,
    integration_service,
)
from syncwatch.features.sync_orchestration.services.on_demand_gateway import (
    OnDemandGateway,
    on_demand_gateway,
)
from syncwatch.features.sync_orchestration.services.sync_scheduler import (
    SyncScheduler,
    sync_scheduler,
)
from syncwatch.features.sync_orchestration.services.webhook_manager import (
    WebhookManager,
    webhook_manager,
)
from syncwatch.infrastructure.audit.audit_logger import AuditLogger, audit_logger
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
sync_router = APIRouter(tags=["sync"])
admin_router = APIRouter(prefix="/admin/sync-health", tags=["admin"])


# Dependency providers; tests swap these via app.dependency_overrides
def get_repository() -> SyncStateRepository:
    return sync_state_repository


def get_scheduler() -> SyncScheduler:
    return sync_scheduler


def get_webhook_manager() -> WebhookManager:
    return webhook_manager


def get_gateway() -> OnDemandGateway:
    return on_demand_gateway


def get_integration_service() -> IntegrationService:
    return integration_service


def get_dashboard() -> DashboardService:
    return dashboard_service


def get_audit_logger() -> AuditLogger:
    return audit_logger


def _require_user(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


def _busy(integration_type: IntegrationType) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "error": "sync_in_progress",
            "message": "Another operation is running for this integration, retry shortly",
            "integration_type": integration_type.value,
        },
    )


# =================================================================
# WEBHOOKS
# =================================================================


@webhook_router.post("/calendar", response_model=WebhookAckResponse)
async def receive_calendar_notification(
    background_tasks: BackgroundTasks,
    channel_id: str | None = Header(None, alias="X-Goog-Channel-ID"),
    resource_id: str | None = Header(None, alias="X-Goog-Resource-ID"),
    resource_state: str | None = Header(None, alias="X-Goog-Resource-State"),
    webhooks: WebhookManager = Depends(get_webhook_manager),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """
    Acknowledge a calendar push notification.

    The provider only needs a fast 2xx; validation failures are logged, not
    surfaced, and the sync itself runs after the response is sent.
    """
    try:
        decision = await webhooks.handle_notification(channel_id, resource_id, resource_state)
    except Exception as e:
        logger.error(
            "Failed to process calendar notification", channel_id=channel_id, error=str(e)
        )
        return WebhookAckResponse(result=NotificationResult.REJECTED.value)

    if decision.should_sync:
        background_tasks.add_task(scheduler.run_sync, decision.integration, SyncTrigger.WEBHOOK)

    return WebhookAckResponse(result=decision.result.value)


# =================================================================
# MANUAL SYNC
# =================================================================


@sync_router.post("/sync/manual", response_model=SyncRunResponse)
async def trigger_manual_sync(
    request: ManualSyncRequest,
    claims: dict = Depends(auth_dependency),
    repository: SyncStateRepository = Depends(get_repository),
    gateway: OnDemandGateway = Depends(get_gateway),
):
    """Run a sync now, bypassing the circuit breaker. One per user per minute."""
    user_id = _require_user(claims)
    integration = Integration(user_id, request.integration_type)

    if not await repository.integration_exists(integration):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{request.integration_type.value} integration is not connected",
        )

    try:
        run = await gateway.trigger(integration)
    except RateLimitedError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limited",
                "message": str(e),
                "retry_after": e.retry_after,
                "limit": e.limit,
                "window_seconds": e.window_seconds,
            },
            headers={"Retry-After": str(e.retry_after)},
        )

    if run.skip_reason == SkipReason.IN_PROGRESS:
        raise _busy(request.integration_type)

    if run.skip_reason == SkipReason.TOKEN_INVALID:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "requires_reauth",
                "message": "Reconnect this integration to resume syncing",
                "integration_type": request.integration_type.value,
            },
        )

    return SyncRunResponse.from_run(run)


# =================================================================
# CONNECT / DISCONNECT
# =================================================================


@sync_router.post("/integrations/{integration_type}", response_model=ConnectIntegrationResponse)
async def connect_integration(
    integration_type: IntegrationType,
    request: ConnectIntegrationRequest,
    claims: dict = Depends(auth_dependency),
    service: IntegrationService = Depends(get_integration_service),
):
    """Store credentials and start syncing; calendar also registers a push channel."""
    user_id = _require_user(claims)
    integration = Integration(user_id, integration_type)
    credentials = IntegrationCredentials(
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        expiry_timestamp=request.expires_at,
    )

    try:
        subscription = await service.connect(integration, credentials)
    except IntegrationBusyError:
        raise _busy(integration_type)
    except Exception as e:
        logger.error(
            "Failed to connect integration",
            user_id=user_id,
            integration_type=integration_type.value,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to connect integration",
        )

    return ConnectIntegrationResponse(
        success=True,
        integration_type=integration_type,
        webhook_active=subscription is not None,
        webhook_expires_at=subscription.expires_at if subscription else None,
        message=f"{integration_type.value} connected",
    )


@sync_router.delete(
    "/integrations/{integration_type}", response_model=DisconnectIntegrationResponse
)
async def disconnect_integration(
    integration_type: IntegrationType,
    claims: dict = Depends(auth_dependency),
    service: IntegrationService = Depends(get_integration_service),
):
    """Stop syncing and remove stored credentials and sync state."""
    user_id = _require_user(claims)
    integration = Integration(user_id, integration_type)

    try:
        removed = await service.disconnect(integration)
    except IntegrationBusyError:
        raise _busy(integration_type)
    except Exception as e:
        logger.error(
            "Failed to disconnect integration",
            user_id=user_id,
            integration_type=integration_type.value,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to disconnect integration",
        )

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{integration_type.value} integration is not connected",
        )

    return DisconnectIntegrationResponse(
        success=True,
        integration_type=integration_type,
        message=f"{integration_type.value} disconnected",
    )


# =================================================================
# ADMIN DASHBOARD
# =================================================================


@admin_router.get("", response_model=SyncHealthResponse)
async def get_sync_health(
    claims: dict = Depends(admin_dependency),
    dashboard: DashboardService = Depends(get_dashboard),
):
    """System-wide sync health metrics."""
    try:
        return await dashboard.get_health_metrics()
    except Exception as e:
        logger.error("Error building sync health metrics", admin_id=claims.get("sub"), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get sync health",
        )


@admin_router.get("/users/{user_id}", response_model=UserSyncStatusResponse)
async def get_user_sync_status(
    user_id: str,
    claims: dict = Depends(admin_dependency),
    dashboard: DashboardService = Depends(get_dashboard),
):
    """Token, breaker, backoff, schedule and webhook snapshot for one user."""
    try:
        integrations = await dashboard.get_user_status(user_id)
    except Exception as e:
        logger.error(
            "Error building user sync status",
            admin_id=claims.get("sub"),
            user_id=user_id,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get user sync status",
        )

    return UserSyncStatusResponse(user_id=user_id, integrations=integrations)


@admin_router.post(
    "/users/{user_id}/{integration_type}/breaker/reset", response_model=BreakerResetResponse
)
async def reset_circuit_breaker(
    user_id: str,
    integration_type: IntegrationType,
    http_request: Request,
    claims: dict = Depends(admin_dependency),
    repository: SyncStateRepository = Depends(get_repository),
    scheduler: SyncScheduler = Depends(get_scheduler),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Force a breaker closed and clear backoff so the next tick syncs."""
    integration = Integration(user_id, integration_type)
    if not await repository.integration_exists(integration):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{integration_type.value} integration is not connected",
        )

    try:
        breaker = await scheduler.reset_breaker(integration, datetime.now(UTC))
    except IntegrationBusyError:
        raise _busy(integration_type)

    await audit.log_breaker_reset(
        user_id=user_id,
        integration_type=integration_type.value,
        admin_id=claims.get("sub"),
        request_id=getattr(http_request.state, "request_id", None)
        or http_request.headers.get("X-Request-ID"),
    )

    logger.info(
        "Circuit breaker reset by admin",
        admin_id=claims.get("sub"),
        user_id=user_id,
        integration_type=integration_type.value,
    )

    return BreakerResetResponse(
        success=True,
        user_id=user_id,
        integration_type=integration_type,
        status=breaker.status.value,
        message="Circuit breaker closed",
    )


router = APIRouter()
router.include_router(webhook_router)
router.include_router(sync_router)
router.include_router(admin_router)
