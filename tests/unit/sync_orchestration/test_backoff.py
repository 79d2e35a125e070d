from datetime import timedelta

from syncwatch.features.sync_orchestration.domain import backoff


def test_delay_doubles_from_five_minutes():
    assert backoff.delay_for(1) == timedelta(minutes=5)
    assert backoff.delay_for(2) == timedelta(minutes=10)
    assert backoff.delay_for(3) == timedelta(minutes=20)
    assert backoff.delay_for(4) == timedelta(minutes=40)


def test_delay_is_capped_at_24_hours():
    assert backoff.delay_for(9) == timedelta(minutes=5 * 256)
    assert backoff.delay_for(10) == timedelta(hours=24)
    assert backoff.delay_for(500) == timedelta(hours=24)


def test_delay_is_monotonic_in_failures():
    delays = [backoff.delay_for(n) for n in range(1, 30)]
    assert delays == sorted(delays)


def test_failures_accumulate_and_success_resets_to_default_interval():
    default = timedelta(hours=4)
    state = backoff.initial_state(default)
    assert not backoff.is_backing_off(state)

    for _ in range(3):
        state = backoff.on_failure(state)
    assert state.consecutive_failures == 3
    assert state.next_delay == timedelta(minutes=20)
    assert backoff.is_backing_off(state)

    state = backoff.on_success(state, default)
    assert state.consecutive_failures == 0
    assert state.next_delay == default
