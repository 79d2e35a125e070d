"""
Read-only sync health queries for the admin dashboard.

Admin authorization happens in the route dependency; this service never
checks it.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from syncwatch.features.sync_orchestration.domain import adaptive_frequency, circuit_breaker
from syncwatch.features.sync_orchestration.domain.models import (
    Integration,
    IntegrationType,
    SyncJobRun,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SUCCESS_RATE_WINDOW = timedelta(hours=24)
PERSISTENT_FAILURE_AGE = timedelta(days=7)
RECENT_HISTORY_LIMIT = 10


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _run_to_dict(run: SyncJobRun) -> dict[str, Any]:
    return {
        "started_at": _iso(run.started_at),
        "ended_at": _iso(run.ended_at),
        "outcome": run.outcome.value,
        "trigger": run.trigger.value,
        "skip_reason": run.skip_reason.value if run.skip_reason else None,
        "error_kind": run.error_kind.value if run.error_kind else None,
        "error_message": run.error_message,
        "items_applied": run.items_applied,
        "changed": run.changed,
    }


class DashboardService:
    def __init__(self, repository: SyncStateRepository | None = None):
        self.repository = repository or sync_state_repository

    async def get_health_metrics(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(UTC)

        active = await self.repository.count_active_integrations()
        invalid = await self.repository.count_invalid_tokens()
        open_breakers = await self.repository.count_open_breakers()
        outcomes = await self.repository.run_outcome_counts(now - SUCCESS_RATE_WINDOW)
        persistent = await self.repository.list_persistent_failures(now - PERSISTENT_FAILURE_AGE)
        notifications = await self.repository.notification_counts(now - SUCCESS_RATE_WINDOW)

        success_rate: dict[str, float | None] = {}
        for integration_type, counts in outcomes.items():
            attempts = counts["success"] + counts["failure"]
            success_rate[integration_type] = (
                round(counts["success"] / attempts * 100, 2) if attempts else None
            )

        saved_by_breaker = sum(c["skipped_breaker_open"] for c in outcomes.values())
        saved_by_token_check = sum(c["skipped_token_invalid"] for c in outcomes.values())

        return {
            "generated_at": now.isoformat(),
            "total_integrations": sum(active.values()),
            "active_integrations": active,
            "invalid_tokens": invalid,
            "open_circuit_breakers": open_breakers,
            "sync_success_rate_24h": success_rate,
            "api_calls_saved_24h": {
                "by_circuit_breaker": saved_by_breaker,
                "by_token_check": saved_by_token_check,
                "total": saved_by_breaker + saved_by_token_check,
            },
            "webhook_triggered_runs_24h": sum(c["webhook_runs"] for c in outcomes.values()),
            "webhook_notifications_24h": notifications,
            "persistent_failures": [
                {
                    "user_id": str(row["user_id"]),
                    "integration_type": row["integration_type"],
                    "last_successful_sync": _iso(row["last_success_at"]),
                    "failure_count": int(row["failure_count"]),
                    "last_error": row["last_error"],
                }
                for row in persistent
            ],
        }

    async def get_user_status(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(UTC)
        return {
            integration_type.value: await self._integration_status(
                Integration(user_id, integration_type), now
            )
            for integration_type in IntegrationType
        }

    async def _integration_status(self, integration: Integration, now: datetime) -> dict[str, Any]:
        if not await self.repository.integration_exists(integration):
            return {"connected": False}

        health = await self.repository.get_token_health(integration)
        breaker = await self.repository.get_breaker(integration)
        state = await self.repository.get_sync_state(integration)
        runs = await self.repository.list_runs(integration, limit=RECENT_HISTORY_LIMIT)
        transitions = await self.repository.list_breaker_transitions(
            integration, limit=RECENT_HISTORY_LIMIT
        )
        bounds = adaptive_frequency.bounds_for(integration.integration_type)

        status: dict[str, Any] = {
            "connected": True,
            "token_health": (
                {
                    "status": health.status.value,
                    "checked_at": _iso(health.checked_at),
                    "expiry_timestamp": _iso(health.expiry_timestamp),
                    "error_message": health.error_message,
                }
                if health
                else None
            ),
            "circuit_breaker": {
                "status": breaker.status.value,
                "consecutive_failures": breaker.consecutive_failures,
                "opened_at": _iso(breaker.opened_at),
                "retry_at": _iso(circuit_breaker.retry_at(breaker)),
                "last_failure_reason": breaker.last_failure_reason,
                "recent_transitions": [
                    {
                        "from_status": t.from_status.value,
                        "to_status": t.to_status.value,
                        "reason": t.reason,
                        "at": _iso(t.at),
                    }
                    for t in transitions
                ],
            },
            "backoff": {
                "consecutive_failures": state.backoff.consecutive_failures,
                "next_delay_seconds": int(state.backoff.next_delay.total_seconds()),
            },
            "schedule": {
                "effective_interval_seconds": int(
                    adaptive_frequency.effective_interval(state.frequency, bounds).total_seconds()
                ),
                "multiplier": state.frequency.multiplier,
                "no_change_streak": state.frequency.no_change_streak,
                "next_run_at": _iso(state.schedule.next_run_at),
                "last_run_at": _iso(state.schedule.last_run_at),
                "last_success_at": _iso(state.schedule.last_success_at),
            },
            "last_run": _run_to_dict(runs[0]) if runs else None,
            "recent_runs": [_run_to_dict(run) for run in runs],
        }

        if integration.integration_type == IntegrationType.CALENDAR:
            subscription = await self.repository.get_subscription(integration.user_id)
            status["webhook"] = {
                "active": subscription is not None and subscription.expires_at > now,
                "channel_id": subscription.channel_id if subscription else None,
                "expires_at": _iso(subscription.expires_at) if subscription else None,
            }

        return status


dashboard_service = DashboardService()
