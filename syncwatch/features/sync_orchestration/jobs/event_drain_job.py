"""
Event drain job.

Moves events from the in-process publisher queue to the Redis list read by
the notification service. The queue lives in process memory, so every
process that runs syncs also runs this loop (the API lifespan and each
worker start it next to their main job).
"""

import asyncio
from datetime import UTC, datetime

from syncwatch.features.sync_orchestration.services.event_publisher import (
    QueueEventPublisher,
    event_publisher,
)
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DRAIN_INTERVAL_SECONDS = 1.0


class EventDrainJob:
    def __init__(
        self,
        publisher: QueueEventPublisher | None = None,
        interval_seconds: float = DRAIN_INTERVAL_SECONDS,
    ):
        self.publisher = publisher or event_publisher
        self.interval_seconds = interval_seconds
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.events_delivered = 0

    async def run_once(self) -> dict:
        """Drain until the queue is empty or Redis refuses a batch."""
        if self.is_running:
            return {"skipped": True, "reason": "already_running"}

        delivered = 0
        try:
            self.is_running = True
            while self.publisher.pending():
                count = await self.publisher.drain()
                if count == 0:
                    break
                delivered += count
            self.events_delivered += delivered
            self.last_run_time = datetime.now(UTC)
        finally:
            self.is_running = False

        return {
            "job_run": "event_drain",
            "delivered": delivered,
            "pending": self.publisher.pending(),
            "dropped_total": self.publisher.dropped,
        }

    def get_job_status(self) -> dict:
        return {
            "job_name": "event_drain",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "events_delivered": self.events_delivered,
            "pending": self.publisher.pending(),
            "dropped_total": self.publisher.dropped,
        }

    def health_check(self) -> dict:
        return {
            "healthy": self.publisher.dropped == 0,
            "service": "event_drain_job",
            "pending": self.publisher.pending(),
            "dropped_total": self.publisher.dropped,
        }


event_drain_job = EventDrainJob()


async def start_event_drain_scheduler():
    logger.info("Starting event drain loop", interval_seconds=event_drain_job.interval_seconds)

    while True:
        try:
            await event_drain_job.run_once()
            await asyncio.sleep(event_drain_job.interval_seconds)
        except asyncio.CancelledError:
            # Best-effort flush on shutdown
            await event_drain_job.run_once()
            logger.info("Event drain loop stopped", **event_drain_job.get_job_status())
            raise
        except Exception as e:
            logger.error("Error in event drain loop", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(5)
