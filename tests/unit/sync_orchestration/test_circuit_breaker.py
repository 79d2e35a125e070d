from datetime import UTC, datetime, timedelta

from syncwatch.features.sync_orchestration.domain import circuit_breaker
from syncwatch.features.sync_orchestration.domain.models import (
    BreakerStatus,
    CircuitBreakerState,
    EventType,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _fail(state, times, now=NOW):
    transitions = []
    for _ in range(times):
        state, transition = circuit_breaker.on_failure(state, now, "boom")
        if transition:
            transitions.append(transition)
    return state, transitions


def test_opens_on_third_consecutive_failure():
    state, transitions = _fail(CircuitBreakerState(), 2)
    assert state.status == BreakerStatus.CLOSED
    assert state.consecutive_failures == 2
    assert transitions == []

    state, transitions = _fail(state, 1)
    assert state.status == BreakerStatus.OPEN
    assert state.opened_at == NOW
    assert transitions[0].from_status == BreakerStatus.CLOSED
    assert transitions[0].to_status == BreakerStatus.OPEN
    assert circuit_breaker.event_for(transitions[0]) == EventType.BREAKER_OPENED


def test_success_while_closed_resets_count_without_transition():
    state, _ = _fail(CircuitBreakerState(), 2)
    state, transition = circuit_breaker.on_success(state, NOW)
    assert state.consecutive_failures == 0
    assert transition is None


def test_open_blocks_until_cool_down_elapses():
    state, _ = _fail(CircuitBreakerState(), 3)
    assert not circuit_breaker.may_proceed(state, NOW + timedelta(minutes=59))
    assert circuit_breaker.may_proceed(state, NOW + timedelta(hours=1))
    assert circuit_breaker.retry_at(state) == NOW + timedelta(hours=1)


def test_bypass_always_proceeds():
    state, _ = _fail(CircuitBreakerState(), 3)
    assert circuit_breaker.may_proceed(state, NOW, bypass=True)


def test_refresh_moves_open_to_half_open_after_cool_down():
    state, _ = _fail(CircuitBreakerState(), 3)

    unchanged, transition = circuit_breaker.refresh(state, NOW + timedelta(minutes=30))
    assert unchanged.status == BreakerStatus.OPEN
    assert transition is None

    half_open, transition = circuit_breaker.refresh(state, NOW + timedelta(hours=1))
    assert half_open.status == BreakerStatus.HALF_OPEN
    assert transition.to_status == BreakerStatus.HALF_OPEN
    assert circuit_breaker.event_for(transition) is None


def test_half_open_success_closes_and_clears_opened_at():
    state, _ = _fail(CircuitBreakerState(), 3)
    state, _ = circuit_breaker.refresh(state, NOW + timedelta(hours=1))

    closed, transition = circuit_breaker.on_success(state, NOW + timedelta(hours=1))
    assert closed.status == BreakerStatus.CLOSED
    assert closed.opened_at is None
    assert closed.consecutive_failures == 0
    assert circuit_breaker.event_for(transition) == EventType.BREAKER_CLOSED


def test_half_open_failure_reopens_with_fresh_cool_down():
    state, _ = _fail(CircuitBreakerState(), 3)
    trial_time = NOW + timedelta(hours=1)
    state, _ = circuit_breaker.refresh(state, trial_time)

    reopened, transition = circuit_breaker.on_failure(state, trial_time, "still down")
    assert reopened.status == BreakerStatus.OPEN
    assert reopened.opened_at == trial_time
    assert transition.from_status == BreakerStatus.HALF_OPEN
    assert circuit_breaker.retry_at(reopened) == trial_time + timedelta(hours=1)


def test_failure_while_open_keeps_original_cool_down():
    state, _ = _fail(CircuitBreakerState(), 3)
    later = NOW + timedelta(minutes=10)

    state, transition = circuit_breaker.on_failure(state, later, "bypassed attempt")
    assert transition is None
    assert state.status == BreakerStatus.OPEN
    assert state.opened_at == NOW
    assert state.consecutive_failures == 4


def test_open_always_has_opened_at():
    state = CircuitBreakerState()
    for minute in range(20):
        now = NOW + timedelta(minutes=minute * 10)
        state, _ = circuit_breaker.refresh(state, now)
        state, _ = circuit_breaker.on_failure(state, now, "x")
        if state.status != BreakerStatus.CLOSED:
            assert state.opened_at is not None


def test_reset_forces_closed():
    state, _ = _fail(CircuitBreakerState(), 3)
    state, transition = circuit_breaker.reset(state, NOW)
    assert state.status == BreakerStatus.CLOSED
    assert state.opened_at is None
    assert transition.reason == circuit_breaker.MANUAL_RESET_REASON

    same, transition = circuit_breaker.reset(state, NOW)
    assert same.status == BreakerStatus.CLOSED
    assert transition is None
