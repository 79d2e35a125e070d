"""
Persistence layer for sync orchestration.

Every per-integration row is keyed by (user_id, integration_type) and
written with a single-statement upsert, so each write is atomic on its own.
Cross-statement ordering for one integration is provided by the scheduler's
per-integration lock, not by this layer.
"""

from datetime import datetime, timedelta

from syncwatch.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from syncwatch.db.pool import get_db_transaction
from syncwatch.features.sync_orchestration.domain import backoff
from syncwatch.features.sync_orchestration.domain.adaptive_frequency import default_interval
from syncwatch.features.sync_orchestration.domain.models import (
    BackoffState,
    BreakerStatus,
    BreakerTransition,
    CircuitBreakerState,
    ErrorKind,
    FrequencyState,
    Integration,
    IntegrationCredentials,
    IntegrationType,
    NotificationResult,
    SkipReason,
    SyncJobRun,
    SyncOutcome,
    SyncSchedule,
    SyncState,
    SyncTrigger,
    TokenHealth,
    TokenStatus,
    WebhookSubscription,
)
from syncwatch.infrastructure.observability.logging import get_logger
from syncwatch.services.encryption_service import decrypt_credentials, encrypt_credentials

logger = get_logger(__name__)


class SyncRepositoryError(DatabaseError):
    """More specific exception for sync persistence failures."""


def _integration(row: dict) -> Integration:
    return Integration(str(row["user_id"]), IntegrationType(row["integration_type"]))


class SyncStateRepository:
    """Persistence helpers backing the scheduler, monitors and dashboard."""

    RUN_SELECT_COLUMNS = """
        user_id, integration_type, started_at, ended_at, outcome, skip_reason,
        trigger, error_kind, error_message, items_applied, changed
    """

    # ------------------------------------------------------------------
    # Integrations and credentials
    # ------------------------------------------------------------------

    @classmethod
    async def create_integration(
        cls, integration: Integration, credentials: IntegrationCredentials, now: datetime
    ) -> None:
        """Insert the integration with closed breaker and an immediately due schedule."""
        encrypted_access, encrypted_refresh = encrypt_credentials(
            credentials.access_token, credentials.refresh_token
        )
        user_id, integration_type = integration.user_id, integration.integration_type.value
        default_seconds = int(default_interval(integration.integration_type).total_seconds())

        async with await get_db_transaction() as conn:
            await conn.execute(
                """
                INSERT INTO integrations (
                    user_id, integration_type, access_token_encrypted,
                    refresh_token_encrypted, connected_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, integration_type) DO UPDATE SET
                    access_token_encrypted = EXCLUDED.access_token_encrypted,
                    refresh_token_encrypted = EXCLUDED.refresh_token_encrypted,
                    updated_at = EXCLUDED.updated_at
                """,
                (user_id, integration_type, encrypted_access, encrypted_refresh, now, now),
            )
            await conn.execute(
                """
                INSERT INTO circuit_breaker_state (user_id, integration_type, status, last_transition_at)
                VALUES (%s, %s, 'closed', %s)
                ON CONFLICT (user_id, integration_type) DO NOTHING
                """,
                (user_id, integration_type, now),
            )
            await conn.execute(
                """
                INSERT INTO sync_state (
                    user_id, integration_type, backoff_failures, backoff_delay_seconds, next_run_at
                )
                VALUES (%s, %s, 0, %s, %s)
                ON CONFLICT (user_id, integration_type) DO NOTHING
                """,
                (user_id, integration_type, default_seconds, now),
            )
            # Reconnect clears any sticky token status
            await conn.execute(
                """
                INSERT INTO token_health (user_id, integration_type, status, expiry_timestamp, checked_at)
                VALUES (%s, %s, 'unknown', %s, %s)
                ON CONFLICT (user_id, integration_type) DO UPDATE SET
                    status = EXCLUDED.status,
                    expiry_timestamp = EXCLUDED.expiry_timestamp,
                    checked_at = EXCLUDED.checked_at,
                    error_message = NULL
                """,
                (user_id, integration_type, credentials.expiry_timestamp, now),
            )

        logger.info("Integration connected", user_id=user_id, integration_type=integration_type)

    @classmethod
    async def delete_integration(cls, integration: Integration) -> bool:
        """Remove the integration; owned rows go with it via ON DELETE CASCADE."""
        deleted = await execute_query(
            "DELETE FROM integrations WHERE user_id = %s AND integration_type = %s",
            (integration.user_id, integration.integration_type.value),
        )
        logger.info(
            "Integration disconnected",
            user_id=integration.user_id,
            integration_type=integration.integration_type.value,
            deleted=bool(deleted),
        )
        return deleted > 0

    @classmethod
    async def integration_exists(cls, integration: Integration) -> bool:
        row = await fetch_one(
            "SELECT 1 AS present FROM integrations WHERE user_id = %s AND integration_type = %s",
            (integration.user_id, integration.integration_type.value),
        )
        return row is not None

    @classmethod
    async def list_user_integrations(cls, user_id: str) -> list[Integration]:
        rows = await fetch_all(
            "SELECT user_id, integration_type FROM integrations WHERE user_id = %s ORDER BY integration_type",
            (user_id,),
        )
        return [_integration(row) for row in rows]

    @classmethod
    async def get_credentials(cls, integration: Integration) -> IntegrationCredentials | None:
        row = await fetch_one(
            """
            SELECT i.access_token_encrypted, i.refresh_token_encrypted, th.expiry_timestamp
            FROM integrations i
            LEFT JOIN token_health th
                ON th.user_id = i.user_id AND th.integration_type = i.integration_type
            WHERE i.user_id = %s AND i.integration_type = %s
            """,
            (integration.user_id, integration.integration_type.value),
        )
        if not row:
            return None

        access_token, refresh_token = decrypt_credentials(
            bytes(row["access_token_encrypted"]),
            bytes(row["refresh_token_encrypted"]) if row["refresh_token_encrypted"] else None,
        )
        return IntegrationCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_timestamp=row["expiry_timestamp"],
        )

    @classmethod
    @with_db_retry(max_retries=2)
    async def save_credentials(
        cls, integration: Integration, credentials: IntegrationCredentials, now: datetime
    ) -> None:
        encrypted_access, encrypted_refresh = encrypt_credentials(
            credentials.access_token, credentials.refresh_token
        )
        await execute_query(
            """
            UPDATE integrations
            SET access_token_encrypted = %s,
                refresh_token_encrypted = COALESCE(%s, refresh_token_encrypted),
                updated_at = %s
            WHERE user_id = %s AND integration_type = %s
            """,
            (
                encrypted_access,
                encrypted_refresh,
                now,
                integration.user_id,
                integration.integration_type.value,
            ),
        )

    # ------------------------------------------------------------------
    # Token health
    # ------------------------------------------------------------------

    @classmethod
    async def get_token_health(cls, integration: Integration) -> TokenHealth | None:
        row = await fetch_one(
            """
            SELECT status, expiry_timestamp, checked_at, error_message
            FROM token_health
            WHERE user_id = %s AND integration_type = %s
            """,
            (integration.user_id, integration.integration_type.value),
        )
        if not row:
            return None
        return TokenHealth(
            status=TokenStatus(row["status"]),
            expiry_timestamp=row["expiry_timestamp"],
            checked_at=row["checked_at"],
            error_message=row["error_message"],
        )

    @classmethod
    @with_db_retry(max_retries=2)
    async def save_token_health(cls, integration: Integration, health: TokenHealth) -> bool:
        """
        Compare-and-set write: only applied when no newer check is stored.

        Returns False when a record with a later checked_at already exists.
        """
        row = await fetch_one(
            """
            INSERT INTO token_health (
                user_id, integration_type, status, expiry_timestamp, checked_at, error_message
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, integration_type) DO UPDATE SET
                status = EXCLUDED.status,
                expiry_timestamp = EXCLUDED.expiry_timestamp,
                checked_at = EXCLUDED.checked_at,
                error_message = EXCLUDED.error_message
            WHERE token_health.checked_at <= EXCLUDED.checked_at
            RETURNING checked_at
            """,
            (
                integration.user_id,
                integration.integration_type.value,
                health.status.value,
                health.expiry_timestamp,
                health.checked_at,
                health.error_message,
            ),
        )
        if row is None:
            logger.debug(
                "Stale token health write discarded",
                user_id=integration.user_id,
                integration_type=integration.integration_type.value,
            )
        return row is not None

    @classmethod
    async def list_refresh_candidates(
        cls, now: datetime, window: timedelta
    ) -> list[tuple[Integration, TokenHealth]]:
        """Integrations whose token expires within `window` and can still be refreshed."""
        rows = await fetch_all(
            """
            SELECT user_id, integration_type, status, expiry_timestamp, checked_at, error_message
            FROM token_health
            WHERE expiry_timestamp IS NOT NULL
              AND expiry_timestamp <= %s
              AND status NOT IN ('revoked', 'requires_reauth')
            ORDER BY expiry_timestamp
            """,
            (now + window,),
        )
        return [
            (
                _integration(row),
                TokenHealth(
                    status=TokenStatus(row["status"]),
                    expiry_timestamp=row["expiry_timestamp"],
                    checked_at=row["checked_at"],
                    error_message=row["error_message"],
                ),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    @classmethod
    async def get_breaker(cls, integration: Integration) -> CircuitBreakerState:
        row = await fetch_one(
            """
            SELECT status, consecutive_failures, opened_at, last_transition_at, last_failure_reason
            FROM circuit_breaker_state
            WHERE user_id = %s AND integration_type = %s
            """,
            (integration.user_id, integration.integration_type.value),
        )
        if not row:
            return CircuitBreakerState()
        return CircuitBreakerState(
            status=BreakerStatus(row["status"]),
            consecutive_failures=row["consecutive_failures"],
            opened_at=row["opened_at"],
            last_transition_at=row["last_transition_at"],
            last_failure_reason=row["last_failure_reason"],
        )

    @classmethod
    async def save_breaker(
        cls,
        integration: Integration,
        state: CircuitBreakerState,
        transition: BreakerTransition | None = None,
    ) -> None:
        """Persist breaker state and its transition record in one transaction."""
        user_id, integration_type = integration.user_id, integration.integration_type.value
        try:
            async with await get_db_transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO circuit_breaker_state (
                        user_id, integration_type, status, consecutive_failures,
                        opened_at, last_transition_at, last_failure_reason
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, integration_type) DO UPDATE SET
                        status = EXCLUDED.status,
                        consecutive_failures = EXCLUDED.consecutive_failures,
                        opened_at = EXCLUDED.opened_at,
                        last_transition_at = EXCLUDED.last_transition_at,
                        last_failure_reason = EXCLUDED.last_failure_reason
                    """,
                    (
                        user_id,
                        integration_type,
                        state.status.value,
                        state.consecutive_failures,
                        state.opened_at,
                        state.last_transition_at,
                        state.last_failure_reason,
                    ),
                )
                if transition is not None:
                    await conn.execute(
                        """
                        INSERT INTO circuit_breaker_transitions (
                            user_id, integration_type, from_status, to_status, reason, transitioned_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            user_id,
                            integration_type,
                            transition.from_status.value,
                            transition.to_status.value,
                            transition.reason,
                            transition.at,
                        ),
                    )
        except Exception as e:
            logger.error(
                "Failed to persist breaker state",
                user_id=user_id,
                integration_type=integration_type,
                error=str(e),
            )
            raise SyncRepositoryError(f"Breaker save failed: {e}", operation="save_breaker") from e

    @classmethod
    async def list_breaker_transitions(
        cls, integration: Integration, limit: int = 20
    ) -> list[BreakerTransition]:
        rows = await fetch_all(
            """
            SELECT from_status, to_status, reason, transitioned_at
            FROM circuit_breaker_transitions
            WHERE user_id = %s AND integration_type = %s
            ORDER BY transitioned_at DESC, id DESC
            LIMIT %s
            """,
            (integration.user_id, integration.integration_type.value, limit),
        )
        return [
            BreakerTransition(
                from_status=BreakerStatus(row["from_status"]),
                to_status=BreakerStatus(row["to_status"]),
                reason=row["reason"],
                at=row["transitioned_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Backoff, adaptive frequency and schedule
    # ------------------------------------------------------------------

    @classmethod
    async def get_sync_state(cls, integration: Integration) -> SyncState:
        row = await fetch_one(
            """
            SELECT backoff_failures, backoff_delay_seconds, frequency_multiplier,
                   no_change_streak, next_run_at, last_run_at, last_success_at
            FROM sync_state
            WHERE user_id = %s AND integration_type = %s
            """,
            (integration.user_id, integration.integration_type.value),
        )
        if not row:
            return SyncState(
                backoff=backoff.initial_state(default_interval(integration.integration_type)),
                frequency=FrequencyState(),
                schedule=SyncSchedule(),
            )
        return SyncState(
            backoff=BackoffState(
                consecutive_failures=row["backoff_failures"],
                next_delay=timedelta(seconds=row["backoff_delay_seconds"]),
            ),
            frequency=FrequencyState(
                multiplier=float(row["frequency_multiplier"]),
                no_change_streak=row["no_change_streak"],
            ),
            schedule=SyncSchedule(
                next_run_at=row["next_run_at"],
                last_run_at=row["last_run_at"],
                last_success_at=row["last_success_at"],
            ),
        )

    @classmethod
    @with_db_retry(max_retries=2)
    async def save_sync_state(cls, integration: Integration, state: SyncState) -> None:
        await execute_query(
            """
            INSERT INTO sync_state (
                user_id, integration_type, backoff_failures, backoff_delay_seconds,
                frequency_multiplier, no_change_streak, next_run_at, last_run_at, last_success_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, integration_type) DO UPDATE SET
                backoff_failures = EXCLUDED.backoff_failures,
                backoff_delay_seconds = EXCLUDED.backoff_delay_seconds,
                frequency_multiplier = EXCLUDED.frequency_multiplier,
                no_change_streak = EXCLUDED.no_change_streak,
                next_run_at = EXCLUDED.next_run_at,
                last_run_at = EXCLUDED.last_run_at,
                last_success_at = EXCLUDED.last_success_at
            """,
            (
                integration.user_id,
                integration.integration_type.value,
                state.backoff.consecutive_failures,
                int(state.backoff.next_delay.total_seconds()),
                state.frequency.multiplier,
                state.frequency.no_change_streak,
                state.schedule.next_run_at,
                state.schedule.last_run_at,
                state.schedule.last_success_at,
            ),
        )

    @classmethod
    async def list_due_integrations(cls, now: datetime, limit: int = 500) -> list[Integration]:
        rows = await fetch_all(
            """
            SELECT s.user_id, s.integration_type
            FROM sync_state s
            JOIN integrations i
                ON i.user_id = s.user_id AND i.integration_type = s.integration_type
            WHERE s.next_run_at IS NULL OR s.next_run_at <= %s
            ORDER BY s.next_run_at NULLS FIRST
            LIMIT %s
            """,
            (now, limit),
        )
        return [_integration(row) for row in rows]

    # ------------------------------------------------------------------
    # Sync job runs
    # ------------------------------------------------------------------

    @classmethod
    async def record_run(cls, run: SyncJobRun) -> None:
        await execute_query(
            """
            INSERT INTO sync_job_runs (
                user_id, integration_type, started_at, ended_at, outcome, skip_reason,
                trigger, error_kind, error_message, items_applied, changed
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                run.integration.user_id,
                run.integration.integration_type.value,
                run.started_at,
                run.ended_at,
                run.outcome.value,
                run.skip_reason.value if run.skip_reason else None,
                run.trigger.value,
                run.error_kind.value if run.error_kind else None,
                (run.error_message or "")[:500] or None,
                run.items_applied,
                run.changed,
            ),
        )

    @classmethod
    def _row_to_run(cls, row: dict) -> SyncJobRun:
        return SyncJobRun(
            integration=_integration(row),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            outcome=SyncOutcome(row["outcome"]),
            trigger=SyncTrigger(row["trigger"]),
            skip_reason=SkipReason(row["skip_reason"]) if row["skip_reason"] else None,
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            error_message=row["error_message"],
            items_applied=row["items_applied"],
            changed=row["changed"],
        )

    @classmethod
    async def list_runs(cls, integration: Integration, limit: int = 20) -> list[SyncJobRun]:
        rows = await fetch_all(
            f"""
            SELECT {cls.RUN_SELECT_COLUMNS}
            FROM sync_job_runs
            WHERE user_id = %s AND integration_type = %s
            ORDER BY started_at DESC, id DESC
            LIMIT %s
            """,
            (integration.user_id, integration.integration_type.value, limit),
        )
        return [cls._row_to_run(row) for row in rows]

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    SUBSCRIPTION_COLUMNS = "user_id, channel_id, resource_id, expires_at, registered_at"

    @classmethod
    def _row_to_subscription(cls, row: dict | None) -> WebhookSubscription | None:
        if not row:
            return None
        return WebhookSubscription(
            user_id=str(row["user_id"]),
            channel_id=row["channel_id"],
            resource_id=row["resource_id"],
            expires_at=row["expires_at"],
            registered_at=row["registered_at"],
        )

    @classmethod
    async def get_subscription(cls, user_id: str) -> WebhookSubscription | None:
        row = await fetch_one(
            f"SELECT {cls.SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions WHERE user_id = %s",
            (user_id,),
        )
        return cls._row_to_subscription(row)

    @classmethod
    async def find_subscription_by_channel(cls, channel_id: str) -> WebhookSubscription | None:
        row = await fetch_one(
            f"SELECT {cls.SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions WHERE channel_id = %s",
            (channel_id,),
        )
        return cls._row_to_subscription(row)

    @classmethod
    async def save_subscription(cls, subscription: WebhookSubscription) -> None:
        """Upsert on user_id: a renewed channel replaces the previous one."""
        await execute_query(
            """
            INSERT INTO webhook_subscriptions (
                user_id, integration_type, channel_id, resource_id, expires_at, registered_at
            )
            VALUES (%s, 'calendar', %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                channel_id = EXCLUDED.channel_id,
                resource_id = EXCLUDED.resource_id,
                expires_at = EXCLUDED.expires_at,
                registered_at = EXCLUDED.registered_at
            """,
            (
                subscription.user_id,
                subscription.channel_id,
                subscription.resource_id,
                subscription.expires_at,
                subscription.registered_at,
            ),
        )

    @classmethod
    async def delete_subscription(cls, user_id: str) -> bool:
        deleted = await execute_query(
            "DELETE FROM webhook_subscriptions WHERE user_id = %s", (user_id,)
        )
        return deleted > 0

    @classmethod
    async def list_expiring_subscriptions(cls, before: datetime) -> list[WebhookSubscription]:
        rows = await fetch_all(
            f"""
            SELECT {cls.SUBSCRIPTION_COLUMNS}
            FROM webhook_subscriptions
            WHERE expires_at <= %s
            ORDER BY expires_at
            """,
            (before,),
        )
        return [cls._row_to_subscription(row) for row in rows]

    @classmethod
    async def record_notification(
        cls,
        channel_id: str | None,
        result: NotificationResult,
        received_at: datetime,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> None:
        await execute_query(
            """
            INSERT INTO webhook_notifications (channel_id, user_id, result, reason, received_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (channel_id, user_id, result.value, (reason or "")[:500] or None, received_at),
        )

    # ------------------------------------------------------------------
    # Dashboard aggregates
    # ------------------------------------------------------------------

    @staticmethod
    def _per_type(rows: list[dict], value_key: str = "total") -> dict[str, int]:
        counts = {integration_type.value: 0 for integration_type in IntegrationType}
        for row in rows:
            counts[row["integration_type"]] = int(row[value_key])
        return counts

    @classmethod
    async def count_active_integrations(cls) -> dict[str, int]:
        rows = await fetch_all(
            "SELECT integration_type, COUNT(*) AS total FROM integrations GROUP BY integration_type"
        )
        return cls._per_type(rows)

    @classmethod
    async def count_invalid_tokens(cls) -> dict[str, int]:
        rows = await fetch_all(
            """
            SELECT integration_type, COUNT(*) AS total
            FROM token_health
            WHERE status IN ('expired', 'revoked', 'requires_reauth')
            GROUP BY integration_type
            """
        )
        return cls._per_type(rows)

    @classmethod
    async def count_open_breakers(cls) -> dict[str, int]:
        rows = await fetch_all(
            """
            SELECT integration_type, COUNT(*) AS total
            FROM circuit_breaker_state
            WHERE status = 'open'
            GROUP BY integration_type
            """
        )
        return cls._per_type(rows)

    @classmethod
    async def run_outcome_counts(cls, since: datetime) -> dict[str, dict[str, int]]:
        """Per type: success, failure and skip counts for runs started since `since`."""
        rows = await fetch_all(
            """
            SELECT integration_type,
                   COUNT(*) FILTER (WHERE outcome = 'success') AS success,
                   COUNT(*) FILTER (WHERE outcome = 'failure') AS failure,
                   COUNT(*) FILTER (WHERE skip_reason = 'breaker_open') AS skipped_breaker_open,
                   COUNT(*) FILTER (WHERE skip_reason = 'token_invalid') AS skipped_token_invalid,
                   COUNT(*) FILTER (WHERE trigger = 'webhook') AS webhook_runs
            FROM sync_job_runs
            WHERE started_at >= %s
            GROUP BY integration_type
            """,
            (since,),
        )
        keys = ("success", "failure", "skipped_breaker_open", "skipped_token_invalid", "webhook_runs")
        counts = {t.value: dict.fromkeys(keys, 0) for t in IntegrationType}
        for row in rows:
            counts[row["integration_type"]] = {key: int(row[key]) for key in keys}
        return counts

    @classmethod
    async def notification_counts(cls, since: datetime) -> dict[str, int]:
        rows = await fetch_all(
            """
            SELECT result, COUNT(*) AS total
            FROM webhook_notifications
            WHERE received_at >= %s
            GROUP BY result
            """,
            (since,),
        )
        counts = {result.value: 0 for result in NotificationResult}
        for row in rows:
            counts[row["result"]] = int(row["total"])
        return counts

    @classmethod
    async def list_persistent_failures(cls, no_success_since: datetime) -> list[dict]:
        """Integrations with failures and no successful sync since `no_success_since`."""
        return await fetch_all(
            """
            SELECT s.user_id, s.integration_type, s.last_success_at,
                   s.backoff_failures AS failure_count,
                   b.last_failure_reason AS last_error
            FROM sync_state s
            LEFT JOIN circuit_breaker_state b
                ON b.user_id = s.user_id AND b.integration_type = s.integration_type
            JOIN integrations i
                ON i.user_id = s.user_id AND i.integration_type = s.integration_type
            WHERE s.backoff_failures > 0
              AND COALESCE(s.last_success_at, i.connected_at) < %s
            ORDER BY s.last_success_at NULLS FIRST
            """,
            (no_success_since,),
        )


# Default instance used by services and jobs
sync_state_repository = SyncStateRepository()
