"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler. Jobs that can emit
sync events run next to the event drain loop. There is no standalone drain
job; the publisher queue is per process.
"""

import asyncio
import contextlib
import os
import sys
from collections.abc import Awaitable, Callable

from syncwatch.db.pool import db_pool
from syncwatch.features.sync_orchestration.jobs.event_drain_job import (
    start_event_drain_scheduler,
)
from syncwatch.features.sync_orchestration.jobs.sync_tick_job import start_sync_tick_scheduler
from syncwatch.features.sync_orchestration.jobs.token_refresh_job import (
    start_token_refresh_scheduler,
)
from syncwatch.features.sync_orchestration.jobs.webhook_renewal_job import (
    start_webhook_renewal_scheduler,
)
from syncwatch.infrastructure.observability.logging import get_logger, setup_logging
from syncwatch.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

DEFAULT_JOB = "sync_tick"

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "sync_tick": start_sync_tick_scheduler,
    "token_refresh": start_token_refresh_scheduler,
    "webhook_renewal": start_webhook_renewal_scheduler,
}

# Jobs whose runs may publish breaker or token-health events
EVENT_EMITTING_JOBS = frozenset({"sync_tick", "token_refresh"})


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", DEFAULT_JOB).strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await db_pool.initialize()
    await fast_redis.initialize()

    drain_task = None
    if name in EVENT_EMITTING_JOBS:
        drain_task = asyncio.create_task(start_event_drain_scheduler())

    try:
        await JOB_REGISTRY[name]()
    finally:
        if drain_task is not None:
            drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain_task
        await fast_redis.close()
        await db_pool.close()
        logger.info("Background worker stopped", job=name)


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level="INFO")
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
