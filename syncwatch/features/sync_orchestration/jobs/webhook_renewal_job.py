"""
Webhook renewal job.

Renews calendar watch channels within 24h of expiry. Failed renewals drop
the subscription and the integration falls back to polling.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.services.webhook_manager import (
    WebhookManager,
    webhook_manager,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class WebhookRenewalJobError(Exception):
    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class WebhookRenewalJob:
    def __init__(self, manager: WebhookManager | None = None, interval_minutes: int | None = None):
        self.manager = manager or webhook_manager
        self.interval_minutes = interval_minutes or settings.WEBHOOK_RENEWAL_INTERVAL_MINUTES
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_summary: dict | None = None

    async def run_once(self, now: datetime | None = None) -> dict:
        if self.is_running:
            logger.warning("Webhook renewal job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        started = datetime.now(UTC)
        try:
            self.is_running = True
            summary = await self.manager.renew_expiring(now)
            self.last_run_time = datetime.now(UTC)

            metrics = {
                "job_run": "webhook_renewal",
                "start_time": started.isoformat(),
                "total_duration_seconds": round(
                    (self.last_run_time - started).total_seconds(), 2
                ),
                **summary,
            }
            self.last_summary = metrics
            if summary["checked"]:
                logger.info("Webhook renewal job completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Webhook renewal job failed", error=str(e), error_type=type(e).__name__)
            raise WebhookRenewalJobError(
                f"Webhook renewal job failed: {e}", operation="run_once"
            ) from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "webhook_renewal",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.interval_minutes,
            "last_run_metrics": self.last_summary,
        }

    def health_check(self) -> dict:
        now = datetime.now(UTC)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > timedelta(
            minutes=self.interval_minutes * 2
        )
        return {
            "healthy": not is_overdue,
            "service": "webhook_renewal_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }


webhook_renewal_job = WebhookRenewalJob()


async def start_webhook_renewal_scheduler():
    logger.info(
        "Starting webhook renewal scheduler", interval_minutes=webhook_renewal_job.interval_minutes
    )

    while True:
        try:
            await webhook_renewal_job.run_once()
            await asyncio.sleep(webhook_renewal_job.interval_minutes * 60)
        except asyncio.CancelledError:
            logger.info("Webhook renewal scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in webhook renewal scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
