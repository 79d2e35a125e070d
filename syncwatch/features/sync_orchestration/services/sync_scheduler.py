"""
Sync scheduler.

run_sync() is the single decision function for one integration:

    token health -> circuit breaker -> execute -> backoff / breaker / adaptive

It is called once per due integration by tick(), immediately by accepted
webhook notifications, and by the on-demand gateway with bypass=True.
Only scheduled runs feed adaptive frequency and move next_run_at; webhook
and manual outcomes still feed backoff and the breaker. run_sync() never
raises: every call ends in a recorded SyncJobRun.
"""

import asyncio
import time
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from syncwatch.config import settings
from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    SyncApiClient,
    SyncResult,
    sync_api_client,
)
from syncwatch.features.sync_orchestration.domain import (
    adaptive_frequency,
    backoff,
    circuit_breaker,
)
from syncwatch.features.sync_orchestration.domain.errors import (
    IntegrationBusyError,
    TokenInvalidError,
    TransientApiError,
)
from syncwatch.features.sync_orchestration.domain.models import (
    BreakerStatus,
    BreakerTransition,
    CircuitBreakerState,
    ErrorKind,
    Integration,
    SkipReason,
    SyncEvent,
    SyncJobRun,
    SyncOutcome,
    SyncState,
    SyncTrigger,
)
from syncwatch.features.sync_orchestration.repository.sync_state_repository import (
    SyncStateRepository,
    sync_state_repository,
)
from syncwatch.features.sync_orchestration.services.event_publisher import (
    EventPublisher,
    event_publisher,
)
from syncwatch.features.sync_orchestration.services.locks import (
    IntegrationLocks,
    integration_locks,
)
from syncwatch.features.sync_orchestration.services.token_health_monitor import (
    TokenHealthMonitor,
    token_health_monitor,
)
from syncwatch.infrastructure.observability.logging import (
    bind_sync_context,
    clear_sync_context,
    get_logger,
    log_sync_run,
)

logger = get_logger(__name__)


def next_run_at(state: SyncState, integration: Integration, now: datetime) -> datetime:
    """now + max(backoff delay while failing, effective polling interval)."""
    interval = adaptive_frequency.effective_interval(
        state.frequency, adaptive_frequency.bounds_for(integration.integration_type)
    )
    delay = state.backoff.next_delay if backoff.is_backing_off(state.backoff) else timedelta(0)
    return now + max(delay, interval)


class SyncScheduler:
    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        api_client: SyncApiClient | None = None,
        monitor: TokenHealthMonitor | None = None,
        publisher: EventPublisher | None = None,
        locks: IntegrationLocks | None = None,
        job_timeout_seconds: float | None = None,
        max_concurrency: int | None = None,
    ):
        self.repository = repository or sync_state_repository
        self.api_client = api_client or sync_api_client
        self.monitor = monitor or token_health_monitor
        self.publisher = publisher or event_publisher
        self.locks = locks or integration_locks
        self.job_timeout_seconds = job_timeout_seconds or settings.SYNC_JOB_TIMEOUT_SECONDS
        self.max_concurrency = max_concurrency or settings.SYNC_MAX_CONCURRENCY

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[SyncJobRun]:
        """Run every due integration concurrently, bounded by SYNC_MAX_CONCURRENCY."""
        pinned = now
        now = now or datetime.now(UTC)
        due = await self.repository.list_due_integrations(now)
        if not due:
            return []

        logger.info("Sync tick", due_count=len(due), max_concurrency=self.max_concurrency)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(integration: Integration) -> SyncJobRun:
            async with semaphore:
                # Runs queued behind the semaphore start from their own clock
                started = pinned or datetime.now(UTC)
                return await self.run_sync(integration, SyncTrigger.SCHEDULED, now=started)

        results = await asyncio.gather(*(_guarded(i) for i in due), return_exceptions=True)

        runs: list[SyncJobRun] = []
        for integration, result in zip(due, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Scheduled sync crashed outside run boundary",
                    user_id=integration.user_id,
                    integration_type=integration.integration_type.value,
                    error=str(result),
                )
                continue
            runs.append(result)
        return runs

    # ------------------------------------------------------------------
    # Decision function
    # ------------------------------------------------------------------

    async def run_sync(
        self,
        integration: Integration,
        trigger: SyncTrigger,
        bypass: bool = False,
        now: datetime | None = None,
    ) -> SyncJobRun:
        now = now or datetime.now(UTC)
        bind_sync_context(integration.user_id, integration.integration_type.value, trigger.value)
        try:
            run = await self._run_sync(integration, trigger, bypass, now)
        except IntegrationBusyError as e:
            logger.info("Integration busy, skipping run", error=str(e))
            run = SyncJobRun(
                integration=integration,
                started_at=now,
                ended_at=max(now, datetime.now(UTC)),
                outcome=SyncOutcome.SKIPPED,
                trigger=trigger,
                skip_reason=SkipReason.IN_PROGRESS,
                error_message=str(e),
            )
            try:
                await self.repository.record_run(run)
            except Exception as record_error:
                logger.error("Failed to record sync run", error=str(record_error))
        except Exception as e:
            logger.exception("Sync run failed unexpectedly", error=str(e))
            run = SyncJobRun(
                integration=integration,
                started_at=now,
                ended_at=max(now, datetime.now(UTC)),
                outcome=SyncOutcome.FAILURE,
                trigger=trigger,
                error_kind=ErrorKind.INTERNAL,
                error_message=f"{type(e).__name__}: {e}",
            )
            try:
                await self.repository.record_run(run)
            except Exception as record_error:
                logger.error("Failed to record sync run", error=str(record_error))
        else:
            log_sync_run(
                run.outcome.value,
                run.duration_ms,
                skip_reason=run.skip_reason.value if run.skip_reason else None,
                error_kind=run.error_kind.value if run.error_kind else None,
                items_applied=run.items_applied,
            )
        finally:
            clear_sync_context()
        return run

    async def _run_sync(
        self, integration: Integration, trigger: SyncTrigger, bypass: bool, now: datetime
    ) -> SyncJobRun:
        health = await self.monitor.check_health(integration, now)
        if health.status.blocks_sync:
            return await self._skip_token_invalid(integration, trigger, now, health.status.value)

        async with self.locks.hold(integration):
            breaker = await self.repository.get_breaker(integration)
            breaker, transition = circuit_breaker.refresh(breaker, now)
            if transition is not None:
                await self._save_breaker(integration, breaker, transition)

            if not circuit_breaker.may_proceed(breaker, now, bypass):
                return await self._skip_breaker_open(integration, trigger, now, breaker)

            if bypass and breaker.status != BreakerStatus.CLOSED:
                logger.info("Bypassing circuit breaker", breaker_status=breaker.status.value)

            started = time.monotonic()
            result, error_kind, error_message = await self._execute(integration, now)
            ended_at = now + timedelta(seconds=time.monotonic() - started)

            state = await self.repository.get_sync_state(integration)
            if error_kind is None:
                run = await self._apply_success(
                    integration, trigger, now, ended_at, result, state, breaker
                )
            else:
                run = await self._apply_failure(
                    integration, trigger, now, ended_at, error_kind, error_message, state, breaker
                )
            await self.repository.record_run(run)
            return run

    async def _execute(
        self, integration: Integration, now: datetime
    ) -> tuple[SyncResult | None, ErrorKind | None, str | None]:
        """Call the API client; every failure is converted into an ErrorKind."""
        try:
            result = await asyncio.wait_for(
                self.api_client.run_incremental_sync(integration),
                timeout=self.job_timeout_seconds,
            )
            return result, None, None
        except TokenInvalidError as e:
            await self.monitor.mark_revoked(integration, str(e), now)
            return None, ErrorKind.TOKEN_INVALID, str(e)
        except TimeoutError:
            return None, ErrorKind.TIMEOUT, f"Sync timed out after {self.job_timeout_seconds}s"
        except TransientApiError as e:
            return None, ErrorKind.TRANSIENT_API_ERROR, str(e)
        except Exception as e:
            return None, ErrorKind.TRANSIENT_API_ERROR, f"{type(e).__name__}: {e}"

    async def _apply_success(
        self,
        integration: Integration,
        trigger: SyncTrigger,
        now: datetime,
        ended_at: datetime,
        result: SyncResult,
        state: SyncState,
        breaker: CircuitBreakerState,
    ) -> SyncJobRun:
        integration_type = integration.integration_type
        state.backoff = backoff.on_success(
            state.backoff, adaptive_frequency.default_interval(integration_type)
        )

        breaker, transition = circuit_breaker.on_success(breaker, now)
        await self._save_breaker(integration, breaker, transition)

        # Only scheduled history drives adaptive cadence
        if trigger == SyncTrigger.SCHEDULED:
            bounds = adaptive_frequency.bounds_for(integration_type)
            if result.changed:
                state.frequency = adaptive_frequency.on_change(state.frequency)
            else:
                state.frequency = adaptive_frequency.on_no_change(state.frequency, bounds)

        state.schedule.last_run_at = now
        state.schedule.last_success_at = ended_at
        if trigger == SyncTrigger.SCHEDULED:
            state.schedule.next_run_at = next_run_at(state, integration, now)
        await self.repository.save_sync_state(integration, state)

        return SyncJobRun(
            integration=integration,
            started_at=now,
            ended_at=ended_at,
            outcome=SyncOutcome.SUCCESS,
            trigger=trigger,
            items_applied=result.items_applied,
            changed=result.changed,
        )

    async def _apply_failure(
        self,
        integration: Integration,
        trigger: SyncTrigger,
        now: datetime,
        ended_at: datetime,
        error_kind: ErrorKind,
        error_message: str | None,
        state: SyncState,
        breaker: CircuitBreakerState,
    ) -> SyncJobRun:
        state.backoff = backoff.on_failure(state.backoff)

        reason = f"{error_kind.value}: {error_message}" if error_message else error_kind.value
        breaker, transition = circuit_breaker.on_failure(breaker, now, reason[:500])
        await self._save_breaker(integration, breaker, transition)

        state.schedule.last_run_at = now
        if trigger == SyncTrigger.SCHEDULED:
            state.schedule.next_run_at = next_run_at(state, integration, now)
        await self.repository.save_sync_state(integration, state)

        logger.warning(
            "Sync job failed",
            error_kind=error_kind.value,
            error=error_message,
            consecutive_failures=state.backoff.consecutive_failures,
            backoff_delay_seconds=int(state.backoff.next_delay.total_seconds()),
            breaker_status=breaker.status.value,
        )

        return SyncJobRun(
            integration=integration,
            started_at=now,
            ended_at=ended_at,
            outcome=SyncOutcome.FAILURE,
            trigger=trigger,
            error_kind=error_kind,
            error_message=error_message,
        )

    # ------------------------------------------------------------------
    # Skips
    # ------------------------------------------------------------------

    async def _skip_token_invalid(
        self, integration: Integration, trigger: SyncTrigger, now: datetime, status: str
    ) -> SyncJobRun:
        run = SyncJobRun(
            integration=integration,
            started_at=now,
            ended_at=now,
            outcome=SyncOutcome.SKIPPED,
            trigger=trigger,
            skip_reason=SkipReason.TOKEN_INVALID,
            error_message=f"Token status {status}",
        )
        async with self.locks.hold(integration):
            if trigger == SyncTrigger.SCHEDULED:
                state = await self.repository.get_sync_state(integration)
                interval = adaptive_frequency.effective_interval(
                    state.frequency, adaptive_frequency.bounds_for(integration.integration_type)
                )
                state.schedule.next_run_at = now + interval
                await self.repository.save_sync_state(integration, state)
            await self.repository.record_run(run)
        return run

    async def _skip_breaker_open(
        self,
        integration: Integration,
        trigger: SyncTrigger,
        now: datetime,
        breaker: CircuitBreakerState,
    ) -> SyncJobRun:
        """Caller holds the integration lock."""
        retry_at = circuit_breaker.retry_at(breaker)
        run = SyncJobRun(
            integration=integration,
            started_at=now,
            ended_at=now,
            outcome=SyncOutcome.SKIPPED,
            trigger=trigger,
            skip_reason=SkipReason.BREAKER_OPEN,
            error_message=f"Circuit open until {retry_at.isoformat()}" if retry_at else None,
        )
        if trigger == SyncTrigger.SCHEDULED and retry_at is not None:
            state = await self.repository.get_sync_state(integration)
            state.schedule.next_run_at = retry_at
            await self.repository.save_sync_state(integration, state)
        await self.repository.record_run(run)
        return run

    # ------------------------------------------------------------------
    # Breaker persistence and admin reset
    # ------------------------------------------------------------------

    async def _save_breaker(
        self,
        integration: Integration,
        breaker: CircuitBreakerState,
        transition: BreakerTransition | None,
    ) -> None:
        await self.repository.save_breaker(integration, breaker, transition)
        if transition is None:
            return

        logger.info(
            "Circuit breaker transition",
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            reason=transition.reason,
        )
        event_type = circuit_breaker.event_for(transition)
        if event_type is not None:
            self.publisher.publish(
                SyncEvent(
                    event_type=event_type,
                    user_id=integration.user_id,
                    integration_type=integration.integration_type,
                    timestamp=transition.at,
                    details={
                        "from_status": transition.from_status.value,
                        "to_status": transition.to_status.value,
                        "reason": transition.reason,
                        "consecutive_failures": breaker.consecutive_failures,
                        "retry_at": (
                            circuit_breaker.retry_at(breaker).isoformat()
                            if circuit_breaker.retry_at(breaker)
                            else None
                        ),
                    },
                )
            )

    async def reset_breaker(
        self, integration: Integration, now: datetime | None = None
    ) -> CircuitBreakerState:
        """Admin override: force the breaker closed and clear backoff."""
        now = now or datetime.now(UTC)
        async with self.locks.hold(integration):
            breaker = await self.repository.get_breaker(integration)
            breaker, transition = circuit_breaker.reset(breaker, now)
            await self._save_breaker(integration, breaker, transition)

            state = await self.repository.get_sync_state(integration)
            if backoff.is_backing_off(state.backoff):
                state.backoff = backoff.on_success(
                    state.backoff, adaptive_frequency.default_interval(integration.integration_type)
                )
                state.schedule = replace(state.schedule, next_run_at=now)
                await self.repository.save_sync_state(integration, state)
        return breaker


sync_scheduler = SyncScheduler()
