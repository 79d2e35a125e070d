import copy
from datetime import UTC, datetime, timedelta

import pytest

from syncwatch.auth.verify import admin_dependency, auth_dependency
from syncwatch.features.sync_orchestration.clients.sync_api_client import (
    SyncResult,
    TokenValidation,
    ValidationResult,
    WatchChannel,
)
from syncwatch.features.sync_orchestration.domain import adaptive_frequency, backoff
from syncwatch.features.sync_orchestration.domain.models import (
    BLOCKING_TOKEN_STATUSES,
    BreakerStatus,
    CircuitBreakerState,
    FrequencyState,
    Integration,
    IntegrationCredentials,
    IntegrationType,
    NotificationResult,
    SkipReason,
    SyncOutcome,
    SyncSchedule,
    SyncState,
    SyncTrigger,
    TokenHealth,
    TokenStatus,
)
from syncwatch.features.sync_orchestration.services.locks import IntegrationLocks
from syncwatch.features.sync_orchestration.services.sync_scheduler import SyncScheduler
from syncwatch.features.sync_orchestration.services.token_health_monitor import (
    TokenHealthMonitor,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeSyncStateRepository:
    """In-memory stand-in for SyncStateRepository with the same method surface."""

    def __init__(self):
        self.integrations: dict[Integration, datetime] = {}
        self.credentials: dict[Integration, IntegrationCredentials] = {}
        self.token_health: dict[Integration, TokenHealth] = {}
        self.breakers: dict[Integration, CircuitBreakerState] = {}
        self.transitions: dict[Integration, list] = {}
        self.sync_states: dict[Integration, SyncState] = {}
        self.runs: list = []
        self.subscriptions: dict[str, object] = {}
        self.notifications: list[dict] = []

    # Integrations -----------------------------------------------------
    async def create_integration(self, integration, credentials, now):
        self.integrations.setdefault(integration, now)
        self.credentials[integration] = copy.copy(credentials)
        self.breakers.setdefault(integration, CircuitBreakerState(last_transition_at=now))
        if integration not in self.sync_states:
            state = self._default_state(integration)
            state.schedule.next_run_at = now
            self.sync_states[integration] = state
        self.token_health[integration] = TokenHealth(
            status=TokenStatus.UNKNOWN,
            checked_at=now,
            expiry_timestamp=credentials.expiry_timestamp,
        )

    async def delete_integration(self, integration):
        if integration not in self.integrations:
            return False
        del self.integrations[integration]
        for store in (
            self.credentials,
            self.token_health,
            self.breakers,
            self.transitions,
            self.sync_states,
        ):
            store.pop(integration, None)
        self.runs = [run for run in self.runs if run.integration != integration]
        return True

    async def integration_exists(self, integration):
        return integration in self.integrations

    async def list_user_integrations(self, user_id):
        return [i for i in self.integrations if i.user_id == user_id]

    async def get_credentials(self, integration):
        creds = self.credentials.get(integration)
        return copy.copy(creds) if creds else None

    async def save_credentials(self, integration, credentials, now):
        self.credentials[integration] = copy.copy(credentials)

    # Token health -----------------------------------------------------
    async def get_token_health(self, integration):
        health = self.token_health.get(integration)
        return copy.copy(health) if health else None

    async def save_token_health(self, integration, health):
        current = self.token_health.get(integration)
        if current is not None and current.checked_at > health.checked_at:
            return False
        self.token_health[integration] = copy.copy(health)
        return True

    async def list_refresh_candidates(self, now, window):
        candidates = [
            (integration, copy.copy(health))
            for integration, health in self.token_health.items()
            if health.expiry_timestamp is not None
            and health.expiry_timestamp <= now + window
            and health.status not in (TokenStatus.REVOKED, TokenStatus.REQUIRES_REAUTH)
        ]
        return sorted(candidates, key=lambda pair: pair[1].expiry_timestamp)

    # Breaker ----------------------------------------------------------
    async def get_breaker(self, integration):
        return copy.copy(self.breakers.get(integration, CircuitBreakerState()))

    async def save_breaker(self, integration, state, transition=None):
        self.breakers[integration] = copy.copy(state)
        if transition is not None:
            self.transitions.setdefault(integration, []).append(transition)

    async def list_breaker_transitions(self, integration, limit=20):
        return list(reversed(self.transitions.get(integration, [])))[:limit]

    # Sync state -------------------------------------------------------
    @staticmethod
    def _default_state(integration):
        return SyncState(
            backoff=backoff.initial_state(
                adaptive_frequency.default_interval(integration.integration_type)
            ),
            frequency=FrequencyState(),
            schedule=SyncSchedule(),
        )

    async def get_sync_state(self, integration):
        state = self.sync_states.get(integration)
        if state is None:
            return self._default_state(integration)
        return copy.deepcopy(state)

    async def save_sync_state(self, integration, state):
        self.sync_states[integration] = copy.deepcopy(state)

    async def list_due_integrations(self, now, limit=500):
        due = [
            integration
            for integration, state in self.sync_states.items()
            if integration in self.integrations
            and (state.schedule.next_run_at is None or state.schedule.next_run_at <= now)
        ]
        return due[:limit]

    # Runs -------------------------------------------------------------
    async def record_run(self, run):
        self.runs.append(run)

    async def list_runs(self, integration, limit=20):
        runs = [run for run in self.runs if run.integration == integration]
        return sorted(runs, key=lambda run: run.started_at, reverse=True)[:limit]

    # Subscriptions ----------------------------------------------------
    async def get_subscription(self, user_id):
        subscription = self.subscriptions.get(user_id)
        return copy.copy(subscription) if subscription else None

    async def find_subscription_by_channel(self, channel_id):
        for subscription in self.subscriptions.values():
            if subscription.channel_id == channel_id:
                return copy.copy(subscription)
        return None

    async def save_subscription(self, subscription):
        self.subscriptions[subscription.user_id] = copy.copy(subscription)

    async def delete_subscription(self, user_id):
        return self.subscriptions.pop(user_id, None) is not None

    async def list_expiring_subscriptions(self, before):
        return sorted(
            (copy.copy(s) for s in self.subscriptions.values() if s.expires_at <= before),
            key=lambda s: s.expires_at,
        )

    async def record_notification(self, channel_id, result, received_at, reason=None, user_id=None):
        self.notifications.append(
            {
                "channel_id": channel_id,
                "user_id": user_id,
                "result": result,
                "reason": reason,
                "received_at": received_at,
            }
        )

    # Dashboard aggregates ---------------------------------------------
    @staticmethod
    def _zero_counts():
        return {t.value: 0 for t in IntegrationType}

    async def count_active_integrations(self):
        counts = self._zero_counts()
        for integration in self.integrations:
            counts[integration.integration_type.value] += 1
        return counts

    async def count_invalid_tokens(self):
        counts = self._zero_counts()
        for integration, health in self.token_health.items():
            if health.status in BLOCKING_TOKEN_STATUSES:
                counts[integration.integration_type.value] += 1
        return counts

    async def count_open_breakers(self):
        counts = self._zero_counts()
        for integration, breaker in self.breakers.items():
            if breaker.status == BreakerStatus.OPEN:
                counts[integration.integration_type.value] += 1
        return counts

    async def run_outcome_counts(self, since):
        keys = ("success", "failure", "skipped_breaker_open", "skipped_token_invalid", "webhook_runs")
        counts = {t.value: dict.fromkeys(keys, 0) for t in IntegrationType}
        for run in self.runs:
            if run.started_at < since:
                continue
            bucket = counts[run.integration.integration_type.value]
            if run.outcome == SyncOutcome.SUCCESS:
                bucket["success"] += 1
            elif run.outcome == SyncOutcome.FAILURE:
                bucket["failure"] += 1
            if run.skip_reason == SkipReason.BREAKER_OPEN:
                bucket["skipped_breaker_open"] += 1
            elif run.skip_reason == SkipReason.TOKEN_INVALID:
                bucket["skipped_token_invalid"] += 1
            if run.trigger == SyncTrigger.WEBHOOK:
                bucket["webhook_runs"] += 1
        return counts

    async def notification_counts(self, since):
        counts = {result.value: 0 for result in NotificationResult}
        for notification in self.notifications:
            if notification["received_at"] >= since:
                counts[notification["result"].value] += 1
        return counts

    async def list_persistent_failures(self, no_success_since):
        rows = []
        for integration, state in self.sync_states.items():
            if integration not in self.integrations or state.backoff.consecutive_failures == 0:
                continue
            last_success = state.schedule.last_success_at or self.integrations[integration]
            if last_success >= no_success_since:
                continue
            breaker = self.breakers.get(integration, CircuitBreakerState())
            rows.append(
                {
                    "user_id": integration.user_id,
                    "integration_type": integration.integration_type.value,
                    "last_success_at": state.schedule.last_success_at,
                    "failure_count": state.backoff.consecutive_failures,
                    "last_error": breaker.last_failure_reason,
                }
            )
        return rows

    # Test helpers -----------------------------------------------------
    def connect(self, integration, now=NOW, token_status=TokenStatus.VALID, expiry=None):
        self.integrations[integration] = now
        self.credentials[integration] = IntegrationCredentials(
            access_token="access", refresh_token="refresh", expiry_timestamp=expiry
        )
        self.breakers[integration] = CircuitBreakerState()
        state = self._default_state(integration)
        state.schedule.next_run_at = now
        self.sync_states[integration] = state
        self.token_health[integration] = TokenHealth(
            status=token_status,
            checked_at=now,
            expiry_timestamp=expiry if expiry is not None else now + timedelta(days=30),
        )


class FakeApiClient:
    """
    Scripted SyncApiClient.

    `sync_results` is consumed in order; each entry is a SyncResult or an
    exception instance to raise. When exhausted, syncs succeed with no change.
    """

    def __init__(self):
        self.sync_results: list = []
        self.validation = ValidationResult(TokenValidation.VALID)
        self.validate_error: Exception | None = None
        self.refresh_result: IntegrationCredentials | Exception | None = None
        self.watch_result: WatchChannel | Exception | None = None
        self.renew_result: WatchChannel | Exception | None = None
        self.calls: list[tuple[str, object]] = []

    def call_count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def validate_token(self, integration):
        self.calls.append(("validate_token", integration))
        if self.validate_error is not None:
            raise self.validate_error
        return self.validation

    async def refresh_token(self, integration, credentials):
        self.calls.append(("refresh_token", integration))
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result or IntegrationCredentials(
            access_token="new-access",
            refresh_token=credentials.refresh_token,
            expiry_timestamp=NOW + timedelta(days=7),
        )

    async def run_incremental_sync(self, integration):
        self.calls.append(("run_incremental_sync", integration))
        if not self.sync_results:
            return SyncResult(changed=False)
        result = self.sync_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def register_watch(self, integration):
        self.calls.append(("register_watch", integration))
        if isinstance(self.watch_result, Exception):
            raise self.watch_result
        return self.watch_result or WatchChannel(
            channel_id="channel-1", resource_id="resource-1", expires_at=NOW + timedelta(days=7)
        )

    async def renew_watch(self, subscription):
        self.calls.append(("renew_watch", subscription))
        if isinstance(self.renew_result, Exception):
            raise self.renew_result
        return self.renew_result or WatchChannel(
            channel_id="channel-2",
            resource_id=subscription.resource_id,
            expires_at=NOW + timedelta(days=7),
        )

    async def stop_watch(self, subscription):
        self.calls.append(("stop_watch", subscription))


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if event.event_type == event_type]


class FakeLimiter:
    """Allows `limit` manual syncs per user, then rejects with a fixed retry_after."""

    def __init__(self, limit: int = 1, retry_after: int = 42):
        self.limit = limit
        self.retry_after = retry_after
        self.hits: dict[str, int] = {}

    async def check_manual_sync_limit(self, user_id):
        self.hits[user_id] = self.hits.get(user_id, 0) + 1
        if self.hits[user_id] > self.limit:
            return False, {
                "allowed": False,
                "limit": self.limit,
                "remaining": 0,
                "retry_after": self.retry_after,
                "window_seconds": 60,
            }
        return True, {"allowed": True, "limit": self.limit, "remaining": 0, "retry_after": None}


class FakeAudit:
    def __init__(self):
        self.entries = []

    async def log_token_refresh(self, user_id, integration_type, outcome, error=None, expires_at=None):
        self.entries.append(("token_refresh", user_id, integration_type, outcome, error))
        return True

    async def log_breaker_reset(self, user_id, integration_type, admin_id, request_id=None):
        self.entries.append(("breaker_reset", user_id, integration_type, admin_id))
        return True


class FakeRedis:
    """Subset of FastRedisClient used by the event drain and integration leases."""

    def __init__(self, available: bool = True):
        self.available = available
        self.lists: dict[str, list[str]] = {}
        self.values: dict[str, str] = {}
        self.client = None

    async def push_many(self, key, values):
        if not self.available:
            return None
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def set_if_absent(self, key, value, ttl_ms):
        if not self.available:
            return None
        if key in self.values:
            return False
        self.values[key] = value
        return True

    async def delete_if_equals(self, key, value):
        if not self.available:
            return None
        if self.values.get(key) != value:
            return False
        del self.values[key]
        return True


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repo():
    return FakeSyncStateRepository()


@pytest.fixture
def api():
    return FakeApiClient()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def locks():
    return IntegrationLocks()


@pytest.fixture
def limiter():
    return FakeLimiter(limit=1, retry_after=42)


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def calendar():
    return Integration("user-123", IntegrationType.CALENDAR)


@pytest.fixture
def contacts():
    return Integration("user-123", IntegrationType.CONTACTS)


@pytest.fixture
def monitor(repo, api, publisher):
    return TokenHealthMonitor(
        repository=repo, api_client=api, publisher=publisher, monitor_interval=timedelta(hours=1)
    )


@pytest.fixture
def scheduler(repo, api, monitor, publisher, locks):
    return SyncScheduler(
        repository=repo,
        api_client=api,
        monitor=monitor,
        publisher=publisher,
        locks=locks,
        job_timeout_seconds=5,
        max_concurrency=4,
    )


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def admin_override():
    def _override():
        return {"sub": "admin-1", "role": "admin"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override, admin_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override
        app.dependency_overrides[admin_dependency] = admin_override

    return _apply
