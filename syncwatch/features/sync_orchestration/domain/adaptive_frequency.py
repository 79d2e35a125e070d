"""
Adaptive polling frequency.

Five consecutive scheduled runs with no detected change stretch the
polling interval by 1.5x; any detected change restores the default. The
effective interval is always clamped to the integration type's bounds.
"""

from datetime import timedelta

from syncwatch.features.sync_orchestration.domain.models import (
    FrequencyBounds,
    FrequencyState,
    IntegrationType,
)

NO_CHANGE_THRESHOLD = 5
STRETCH_FACTOR = 1.5

# Calendar polls are a fallback to webhooks and never drift slower than 4h
FREQUENCY_BOUNDS: dict[IntegrationType, FrequencyBounds] = {
    IntegrationType.CALENDAR: FrequencyBounds(
        default=timedelta(hours=4),
        slowest=timedelta(hours=4),
        fastest=timedelta(hours=1),
    ),
    IntegrationType.CONTACTS: FrequencyBounds(
        default=timedelta(days=3),
        slowest=timedelta(days=7),
        fastest=timedelta(days=1),
    ),
}


def bounds_for(integration_type: IntegrationType) -> FrequencyBounds:
    return FREQUENCY_BOUNDS[integration_type]


def default_interval(integration_type: IntegrationType) -> timedelta:
    return FREQUENCY_BOUNDS[integration_type].default


def max_multiplier(bounds: FrequencyBounds) -> float:
    """
    Upper bound on the stored multiplier.

    Stretching past slowest/default cannot change the effective interval,
    but at least one stretch is always recorded so history stays visible.
    """
    return max(bounds.slowest / bounds.default, STRETCH_FACTOR)


def on_no_change(state: FrequencyState, bounds: FrequencyBounds) -> FrequencyState:
    streak = state.no_change_streak + 1
    if streak < NO_CHANGE_THRESHOLD:
        return FrequencyState(multiplier=state.multiplier, no_change_streak=streak)
    multiplier = min(state.multiplier * STRETCH_FACTOR, max_multiplier(bounds))
    return FrequencyState(multiplier=multiplier, no_change_streak=0)


def on_change(state: FrequencyState) -> FrequencyState:
    return FrequencyState(multiplier=1.0, no_change_streak=0)


def effective_interval(state: FrequencyState, bounds: FrequencyBounds) -> timedelta:
    interval = bounds.default * state.multiplier
    return max(bounds.fastest, min(interval, bounds.slowest))
