"""
Sync tick job.

Every SYNC_TICK_INTERVAL_SECONDS, runs the scheduler over all integrations
whose next_run_at has passed. Per-integration failures are recorded as
SyncJobRuns by the scheduler itself; this job only aggregates them.
"""

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.domain.models import SyncJobRun
from syncwatch.features.sync_orchestration.services.sync_scheduler import (
    SyncScheduler,
    sync_scheduler,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncTickJobError(Exception):
    """Custom exception for sync tick job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SyncTickMetrics:
    """Metrics for one tick."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.integrations_due = 0
        self.outcomes: Counter[str] = Counter()
        self.skip_reasons: Counter[str] = Counter()
        self.total_duration_seconds = 0.0

    def record_runs(self, runs: list[SyncJobRun]):
        self.integrations_due = len(runs)
        for run in runs:
            self.outcomes[run.outcome.value] += 1
            if run.skip_reason:
                self.skip_reasons[run.skip_reason.value] += 1

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        attempted = self.outcomes["success"] + self.outcomes["failure"]
        return {
            "job_run": "sync_tick",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "integrations_due": self.integrations_due,
            "succeeded": self.outcomes["success"],
            "failed": self.outcomes["failure"],
            "skipped": self.outcomes["skipped"],
            "skip_reasons": dict(self.skip_reasons),
            "success_rate_percent": (
                round(self.outcomes["success"] / attempted * 100, 2) if attempted else None
            ),
        }


class SyncTickJob:
    def __init__(self, scheduler: SyncScheduler | None = None, interval_seconds: int | None = None):
        self.scheduler = scheduler or sync_scheduler
        self.interval_seconds = interval_seconds or settings.SYNC_TICK_INTERVAL_SECONDS
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = SyncTickMetrics()

    async def run_once(self, now: datetime | None = None) -> dict:
        """
        Run one tick.

        Raises:
            SyncTickJobError: if the due-integration scan itself fails
        """
        if self.is_running:
            logger.warning("Sync tick already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            runs = await self.scheduler.tick(now)
            self.job_metrics.record_runs(runs)
            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)

            metrics = self.job_metrics.to_dict()
            if runs:
                logger.info("Sync tick completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Sync tick failed", error=str(e), error_type=type(e).__name__)
            raise SyncTickJobError(f"Sync tick failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "sync_tick",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.interval_seconds,
            "max_concurrency": self.scheduler.max_concurrency,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Healthy unless the tick has not completed for 2x its interval."""
        now = datetime.now(UTC)
        overdue_threshold = timedelta(seconds=self.interval_seconds * 2)
        is_overdue = (
            self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold
        )
        health_status = {
            "healthy": not is_overdue,
            "service": "sync_tick_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds():.0f} seconds"
            )
        return health_status


sync_tick_job = SyncTickJob()


async def start_sync_tick_scheduler():
    """Run the tick forever, sleeping SYNC_TICK_INTERVAL_SECONDS between runs."""
    logger.info("Starting sync tick scheduler", interval_seconds=sync_tick_job.interval_seconds)

    while True:
        try:
            await sync_tick_job.run_once()
            await asyncio.sleep(sync_tick_job.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sync tick scheduler stopped")
            raise
        except Exception as e:
            logger.error("Error in sync tick scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(sync_tick_job.interval_seconds)
