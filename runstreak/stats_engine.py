from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Any

from .dates import same_month, same_year
from .models import StatsState, activity_day, activity_distance, activity_elevation, activity_time_seconds
from .streak_engine import (
    Coercion,
    ManualEditResult,
    apply_field_edits,
    coerce_bool,
    coerce_km_to_meters,
    coerce_number,
)


logger = logging.getLogger(__name__)

# Distance and goal fields are entered in kilometres.
STATS_FIELD_COERCIONS: dict[str, Coercion] = {
    "monthlyDistance": ("monthly_distance_meters", coerce_km_to_meters),
    "monthlyTime": ("monthly_time_seconds", coerce_number),
    "monthlyElevation": ("monthly_elevation_meters", coerce_number),
    "monthlyGoal": ("monthly_goal_meters", coerce_km_to_meters),
    "yearlyDistance": ("yearly_distance_meters", coerce_km_to_meters),
    "yearlyTime": ("yearly_time_seconds", coerce_number),
    "yearlyElevation": ("yearly_elevation_meters", coerce_number),
    "yearlyGoal": ("yearly_goal_meters", coerce_km_to_meters),
    "manuallyUpdated": ("manually_updated", coerce_bool),
}


def apply_run(
    state: StatsState,
    activity: dict[str, Any],
    now: datetime,
    *,
    tz: tzinfo | None = None,
) -> StatsState:
    """Add one run to the monthly and yearly accumulators.

    Accumulators belong to the period of ``last_updated``. When ``now`` is in
    a later month or year they are zeroed first, whatever the run's date.
    The run itself only counts toward periods containing its own start date,
    so a late-delivered run from last month never lands in this month's total.
    """
    if state.manually_updated:
        return replace(state, last_updated=now)

    zone = tz or now.tzinfo
    if zone is None:
        raise ValueError("apply_run needs a timezone-aware 'now' or an explicit tz")
    now_local = now.astimezone(zone)

    monthly = (state.monthly_distance_meters, state.monthly_time_seconds, state.monthly_elevation_meters)
    yearly = (state.yearly_distance_meters, state.yearly_time_seconds, state.yearly_elevation_meters)
    if state.last_updated is not None:
        last_local = state.last_updated.astimezone(zone)
        if not same_month(last_local, now_local):
            logger.info("Monthly stats rolled over (%s -> %s).", last_local.strftime("%Y-%m"), now_local.strftime("%Y-%m"))
            monthly = (0.0, 0.0, 0.0)
        if not same_year(last_local, now_local):
            logger.info("Yearly stats rolled over (%s -> %s).", last_local.year, now_local.year)
            yearly = (0.0, 0.0, 0.0)

    contribution = (
        activity_distance(activity),
        activity_time_seconds(activity),
        activity_elevation(activity),
    )
    run_day = activity_day(activity, zone) or now_local.date()
    if same_month(run_day, now_local):
        monthly = tuple(total + added for total, added in zip(monthly, contribution))
    if same_year(run_day, now_local):
        yearly = tuple(total + added for total, added in zip(yearly, contribution))

    return replace(
        state,
        monthly_distance_meters=monthly[0],
        monthly_time_seconds=monthly[1],
        monthly_elevation_meters=monthly[2],
        yearly_distance_meters=yearly[0],
        yearly_time_seconds=yearly[1],
        yearly_elevation_meters=yearly[2],
        last_updated=now,
    )


def manual_edit(state: StatsState, fields: dict[str, Any], now: datetime) -> ManualEditResult:
    changes, applied, ignored = apply_field_edits(state, fields, STATS_FIELD_COERCIONS)
    changes.setdefault("manually_updated", True)
    return ManualEditResult(
        state=replace(state, **changes, last_updated=now),
        applied=applied,
        ignored=ignored,
    )


def reset_monthly(state: StatsState, now: datetime) -> StatsState:
    return replace(
        state,
        monthly_distance_meters=0.0,
        monthly_time_seconds=0.0,
        monthly_elevation_meters=0.0,
        manually_updated=False,
        last_updated=now,
    )


def reset_yearly(state: StatsState, now: datetime) -> StatsState:
    return replace(
        state,
        yearly_distance_meters=0.0,
        yearly_time_seconds=0.0,
        yearly_elevation_meters=0.0,
        manually_updated=False,
        last_updated=now,
    )


def toggle_manual_mode(state: StatsState, now: datetime) -> StatsState:
    return replace(state, manually_updated=not state.manually_updated, last_updated=now)
