"""
Outbound event hand-off.

publish() never blocks sync execution: events go onto an in-process queue
and the event_drain job pushes them to the Redis list consumed by the
notification service. A full queue drops the event with an error log.
"""

import asyncio
import json
from typing import Protocol

from syncwatch.features.sync_orchestration.domain.models import SyncEvent
from syncwatch.infrastructure.observability.logging import get_logger
from syncwatch.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

EVENTS_LIST_KEY = "sync:events"
MAX_QUEUED_EVENTS = 10_000
DRAIN_BATCH_SIZE = 100


class EventPublisher(Protocol):
    def publish(self, event: SyncEvent) -> None: ...


class QueueEventPublisher:
    def __init__(
        self,
        redis_client: FastRedisClient | None = None,
        list_key: str = EVENTS_LIST_KEY,
        maxsize: int = MAX_QUEUED_EVENTS,
    ):
        self.redis = redis_client or fast_redis
        self.list_key = list_key
        self.queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: SyncEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "Event queue full, dropping event",
                event_type=event.event_type.value,
                user_id=event.user_id,
                integration_type=event.integration_type.value,
                dropped_total=self.dropped,
            )
            return

        logger.info(
            "Sync event published",
            event_type=event.event_type.value,
            user_id=event.user_id,
            integration_type=event.integration_type.value,
        )

    def pending(self) -> int:
        return self.queue.qsize()

    async def drain(self, max_events: int = DRAIN_BATCH_SIZE) -> int:
        """Push up to `max_events` queued events to Redis. Returns how many were delivered."""
        batch: list[SyncEvent] = []
        while len(batch) < max_events:
            try:
                batch.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break

        if not batch:
            return 0

        payload = [json.dumps(event.to_dict()) for event in batch]
        pushed = await self.redis.push_many(self.list_key, payload)
        if pushed is None:
            # Redis unavailable: put the batch back for the next drain
            requeued = 0
            for event in batch:
                try:
                    self.queue.put_nowait(event)
                    requeued += 1
                except asyncio.QueueFull:
                    self.dropped += 1
            logger.warning("Event drain failed, events requeued", requeued=requeued)
            return 0

        logger.debug("Sync events drained", count=len(batch), list_key=self.list_key)
        return len(batch)


event_publisher = QueueEventPublisher()
