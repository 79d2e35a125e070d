"""
Domain models for the sync orchestration feature.

Plain dataclasses shared by the pure state-transition modules, the
repository and the services. Transition modules never mutate these in
place; they return new instances via dataclasses.replace().
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class IntegrationType(str, Enum):
    CONTACTS = "contacts"
    CALENDAR = "calendar"


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    REVOKED = "revoked"
    UNKNOWN = "unknown"
    REQUIRES_REAUTH = "requires_reauth"

    @property
    def blocks_sync(self) -> bool:
        return self in BLOCKING_TOKEN_STATUSES


BLOCKING_TOKEN_STATUSES = frozenset(
    {TokenStatus.EXPIRED, TokenStatus.REVOKED, TokenStatus.REQUIRES_REAUTH}
)


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    TOKEN_INVALID = "token_invalid"
    BREAKER_OPEN = "breaker_open"
    IN_PROGRESS = "in_progress"


class SyncTrigger(str, Enum):
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class ErrorKind(str, Enum):
    TOKEN_INVALID = "token_invalid"
    TRANSIENT_API_ERROR = "transient_api_error"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class EventType(str, Enum):
    TOKEN_HEALTH_CHANGED = "token_health_changed"
    BREAKER_OPENED = "breaker_opened"
    BREAKER_CLOSED = "breaker_closed"


class NotificationResult(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(frozen=True, slots=True)
class Integration:
    """A connected (user, integration type) pair. Hashable so it can key locks."""

    user_id: str
    integration_type: IntegrationType

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.integration_type.value}"


@dataclass(slots=True)
class TokenHealth:
    status: TokenStatus
    checked_at: datetime
    expiry_timestamp: datetime | None = None
    error_message: str | None = None


@dataclass(slots=True)
class IntegrationCredentials:
    """Decrypted credential pair. Never logged."""

    access_token: str
    refresh_token: str | None
    expiry_timestamp: datetime | None = None

    def __repr__(self) -> str:
        return (
            "IntegrationCredentials(access_token='***', "
            f"has_refresh_token={self.refresh_token is not None}, "
            f"expiry_timestamp={self.expiry_timestamp!r})"
        )


@dataclass(slots=True)
class CircuitBreakerState:
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: datetime | None = None
    last_transition_at: datetime | None = None
    last_failure_reason: str | None = None


@dataclass(frozen=True, slots=True)
class BreakerTransition:
    from_status: BreakerStatus
    to_status: BreakerStatus
    reason: str
    at: datetime


@dataclass(slots=True)
class BackoffState:
    consecutive_failures: int
    next_delay: timedelta


@dataclass(frozen=True, slots=True)
class FrequencyBounds:
    """
    Polling bounds for one integration type.

    `slowest` is the longest interval adaptive stretching may reach and
    `fastest` the shortest interval ever used.
    """

    default: timedelta
    slowest: timedelta
    fastest: timedelta


@dataclass(slots=True)
class FrequencyState:
    multiplier: float = 1.0
    no_change_streak: int = 0


@dataclass(slots=True)
class SyncSchedule:
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None


@dataclass(slots=True)
class SyncState:
    """One sync_state row: backoff, adaptive frequency and schedule for an integration."""

    backoff: BackoffState
    frequency: FrequencyState
    schedule: SyncSchedule


@dataclass(slots=True)
class WebhookSubscription:
    user_id: str
    channel_id: str
    resource_id: str
    expires_at: datetime
    registered_at: datetime

    @property
    def integration(self) -> Integration:
        return Integration(self.user_id, IntegrationType.CALENDAR)


@dataclass(frozen=True, slots=True)
class SyncJobRun:
    integration: Integration
    started_at: datetime
    ended_at: datetime
    outcome: SyncOutcome
    trigger: SyncTrigger
    skip_reason: SkipReason | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    items_applied: int = 0
    changed: bool = False

    @property
    def duration_ms(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() * 1000


@dataclass(frozen=True, slots=True)
class SyncEvent:
    event_type: EventType
    user_id: str
    integration_type: IntegrationType
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "integration_type": self.integration_type.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
