"""
Per-integration circuit breaker.

closed -> open on the 3rd consecutive failure; open -> half_open once the
one hour cool-down has elapsed; half_open -> closed on success or back to
open (fresh cool-down) on failure.

Every function is pure: it takes the current state plus `now` and returns
the next state together with the BreakerTransition it caused, if any. The
caller persists both and decides which transitions become events.
"""

from dataclasses import replace
from datetime import datetime, timedelta

from syncwatch.features.sync_orchestration.domain.models import (
    BreakerStatus,
    BreakerTransition,
    CircuitBreakerState,
    EventType,
)

FAILURE_THRESHOLD = 3
COOL_DOWN = timedelta(hours=1)

MANUAL_RESET_REASON = "manual reset"

TransitionResult = tuple[CircuitBreakerState, BreakerTransition | None]


def _transition(
    state: CircuitBreakerState, to_status: BreakerStatus, reason: str, now: datetime, **changes
) -> TransitionResult:
    transition = BreakerTransition(
        from_status=state.status, to_status=to_status, reason=reason, at=now
    )
    new_state = replace(state, status=to_status, last_transition_at=now, **changes)
    return new_state, transition


def retry_at(state: CircuitBreakerState) -> datetime | None:
    """When an open breaker becomes eligible for a half-open trial run."""
    if state.status != BreakerStatus.OPEN or state.opened_at is None:
        return None
    return state.opened_at + COOL_DOWN


def cool_down_elapsed(state: CircuitBreakerState, now: datetime) -> bool:
    eligible_at = retry_at(state)
    return eligible_at is not None and now >= eligible_at


def refresh(state: CircuitBreakerState, now: datetime) -> TransitionResult:
    """Move open -> half_open when the cool-down has elapsed; otherwise unchanged."""
    if cool_down_elapsed(state, now):
        return _transition(state, BreakerStatus.HALF_OPEN, "cool-down elapsed", now)
    return state, None


def may_proceed(state: CircuitBreakerState, now: datetime, bypass: bool = False) -> bool:
    if bypass:
        return True
    if state.status in (BreakerStatus.CLOSED, BreakerStatus.HALF_OPEN):
        return True
    return cool_down_elapsed(state, now)


def on_success(state: CircuitBreakerState, now: datetime) -> TransitionResult:
    if state.status == BreakerStatus.CLOSED:
        return replace(state, consecutive_failures=0), None
    return _transition(
        state,
        BreakerStatus.CLOSED,
        f"successful sync while {state.status.value}",
        now,
        consecutive_failures=0,
        opened_at=None,
    )


def on_failure(state: CircuitBreakerState, now: datetime, reason: str) -> TransitionResult:
    failures = state.consecutive_failures + 1

    if state.status == BreakerStatus.CLOSED:
        if failures >= FAILURE_THRESHOLD:
            return _transition(
                state,
                BreakerStatus.OPEN,
                f"{failures} consecutive failures: {reason}",
                now,
                consecutive_failures=failures,
                opened_at=now,
                last_failure_reason=reason,
            )
        return replace(state, consecutive_failures=failures, last_failure_reason=reason), None

    if state.status == BreakerStatus.HALF_OPEN:
        return _transition(
            state,
            BreakerStatus.OPEN,
            f"half-open trial failed: {reason}",
            now,
            consecutive_failures=failures,
            opened_at=now,
            last_failure_reason=reason,
        )

    # A bypassed attempt against an open breaker keeps the original cool-down
    return replace(state, consecutive_failures=failures, last_failure_reason=reason), None


def reset(state: CircuitBreakerState, now: datetime) -> TransitionResult:
    if state.status == BreakerStatus.CLOSED and state.consecutive_failures == 0:
        return state, None
    if state.status == BreakerStatus.CLOSED:
        return replace(state, consecutive_failures=0), None
    return _transition(
        state,
        BreakerStatus.CLOSED,
        MANUAL_RESET_REASON,
        now,
        consecutive_failures=0,
        opened_at=None,
    )


def event_for(transition: BreakerTransition | None) -> EventType | None:
    """Only the closed<->open edges are user-visible; half_open entry is not."""
    if transition is None:
        return None
    if transition.from_status == BreakerStatus.CLOSED and transition.to_status == BreakerStatus.OPEN:
        return EventType.BREAKER_OPENED
    if transition.to_status == BreakerStatus.CLOSED:
        return EventType.BREAKER_CLOSED
    return None
