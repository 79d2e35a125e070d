"""
Backoff controller.

Pure transitions over BackoffState. After n consecutive failures the delay
is min(5m * 2^(n-1), 24h); a success hands control back to the scheduling
cadence by resetting the delay to the integration's default interval.
"""

from datetime import timedelta

from syncwatch.features.sync_orchestration.domain.models import BackoffState

BASE_DELAY = timedelta(minutes=5)
MAX_DELAY = timedelta(hours=24)

# 5m * 2^9 already exceeds 24h; larger exponents are never computed
_MAX_EXPONENT = 9


def delay_for(consecutive_failures: int) -> timedelta:
    if consecutive_failures <= 0:
        return timedelta(0)
    exponent = min(consecutive_failures - 1, _MAX_EXPONENT)
    return min(BASE_DELAY * (2**exponent), MAX_DELAY)


def initial_state(default_interval: timedelta) -> BackoffState:
    return BackoffState(consecutive_failures=0, next_delay=default_interval)


def on_failure(state: BackoffState) -> BackoffState:
    failures = state.consecutive_failures + 1
    return BackoffState(consecutive_failures=failures, next_delay=delay_for(failures))


def on_success(state: BackoffState, default_interval: timedelta) -> BackoffState:
    return BackoffState(consecutive_failures=0, next_delay=default_interval)


def is_backing_off(state: BackoffState) -> bool:
    return state.consecutive_failures > 0
