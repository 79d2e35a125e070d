"""
Token Refresh Job for proactive OAuth token management.
Refreshes credentials expiring within 48h every TOKEN_REFRESH_INTERVAL_HOURS.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.services.token_refresh_service import (
    OUTCOME_MISSING_REFRESH_TOKEN,
    RefreshOutcome,
    TokenRefreshService,
    token_refresh_service,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class TokenRefreshJobError(Exception):
    """Custom exception for token refresh job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class TokenRefreshMetrics:
    """Metrics tracking for token refresh operations."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self.integrations_processed = 0
        self.tokens_refreshed = 0
        self.refresh_failures = 0
        self.missing_refresh_tokens = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record(self, outcome: RefreshOutcome):
        self.integrations_processed += 1
        if outcome.succeeded:
            self.tokens_refreshed += 1
            logger.debug(
                "Token refresh successful",
                user_id=outcome.integration.user_id,
                integration_type=outcome.integration.integration_type.value,
                duration_ms=outcome.duration_ms,
                job_run="token_refresh",
            )
            return

        if outcome.outcome == OUTCOME_MISSING_REFRESH_TOKEN:
            self.missing_refresh_tokens += 1
        else:
            self.refresh_failures += 1
        self.errors.append(
            {
                "user_id": outcome.integration.user_id,
                "integration_type": outcome.integration.integration_type.value,
                "outcome": outcome.outcome,
                "error": outcome.error,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    def finalize(self):
        """Finalize metrics and calculate totals."""
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def success_rate_percent(self) -> float:
        if not self.integrations_processed:
            return 0.0
        return round(self.tokens_refreshed / self.integrations_processed * 100, 2)

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": "token_refresh",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "integrations_processed": self.integrations_processed,
            "tokens_refreshed": self.tokens_refreshed,
            "refresh_failures": self.refresh_failures,
            "missing_refresh_tokens": self.missing_refresh_tokens,
            "success_rate_percent": self.success_rate_percent,
            "errors_count": len(self.errors),
        }


class TokenRefreshJob:
    """
    Background job for proactive token refresh management.

    Refreshing ahead of expiry keeps syncs from being skipped for an expired
    token. Anything that cannot be refreshed is parked in requires_reauth by
    the refresh service and is not retried until the user reconnects.
    """

    def __init__(
        self, service: TokenRefreshService | None = None, interval_hours: int | None = None
    ):
        self.service = service or token_refresh_service
        self.interval_hours = interval_hours or settings.TOKEN_REFRESH_INTERVAL_HOURS
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = TokenRefreshMetrics()

    async def run_once(self, now: datetime | None = None) -> dict:
        """
        Run a single iteration of the token refresh job.

        Returns:
            Dict: Job execution metrics and results

        Raises:
            TokenRefreshJobError: If the candidate scan fails
        """
        if self.is_running:
            logger.warning("Token refresh job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            logger.info(
                "Starting token refresh job",
                refresh_window_hours=self.service.refresh_window.total_seconds() / 3600,
            )

            outcomes = await self.service.refresh_expiring(now)
            if not outcomes:
                logger.info("No tokens found requiring refresh")

            for outcome in outcomes:
                self.job_metrics.record(outcome)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)

            metrics = self.job_metrics.to_dict()
            logger.info("Token refresh job completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Token refresh job failed", error=str(e), error_type=type(e).__name__)
            raise TokenRefreshJobError(f"Token refresh job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        """
        Get current job status and metrics.

        Returns:
            Dict: Current job status information
        """
        return {
            "job_name": "token_refresh",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_hours": self.interval_hours,
            "max_concurrent": self.service.max_concurrent,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """
        Health check for the token refresh job.

        Returns:
            Dict: Health status and configuration
        """
        now = datetime.now(UTC)

        # Overdue when it hasn't run in 2x the interval
        overdue_threshold = timedelta(hours=self.interval_hours * 2)
        is_overdue = (
            self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold
        )

        health_status = {
            "healthy": not is_overdue,
            "service": "token_refresh_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "recent_success_rate": (
                self.job_metrics.success_rate_percent if self.last_run_time else None
            ),
            "configuration": {
                "interval_hours": self.interval_hours,
                "max_concurrent": self.service.max_concurrent,
            },
        }

        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )

        return health_status


# Singleton instance for application use
token_refresh_job = TokenRefreshJob()


async def run_token_refresh_job() -> dict:
    """Run a single iteration of the token refresh job."""
    return await token_refresh_job.run_once()


async def start_token_refresh_scheduler():
    """Run the refresh job forever, TOKEN_REFRESH_INTERVAL_HOURS apart."""
    logger.info(
        "Starting token refresh job scheduler", interval_hours=token_refresh_job.interval_hours
    )

    while True:
        try:
            metrics = await run_token_refresh_job()

            if not metrics.get("skipped", False):
                logger.info("Token refresh job cycle completed", **metrics)

            await asyncio.sleep(token_refresh_job.interval_hours * 3600)

        except asyncio.CancelledError:
            logger.info("Token refresh job scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in token refresh job scheduler", error=str(e), error_type=type(e).__name__
            )
            # Wait a bit before retrying to avoid tight error loops
            await asyncio.sleep(60)
