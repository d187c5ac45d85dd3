"""Streak and lifetime-total rules.

Every operation here is pure: it takes a :class:`StreakState` and returns a
new one. Persisting the result, and moving the dedup watermark, is the
caller's job.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from typing import Any, Callable

from .dates import days_between, parse_day
from .errors import ValidationError
from .models import (
    LastProcessedActivity,
    RUN_TYPE,
    StreakState,
    activity_day,
    activity_distance,
    activity_elevation,
    activity_time_seconds,
)


logger = logging.getLogger(__name__)

KM_TO_METERS = 1000.0


@dataclass(frozen=True)
class StreakUpdate:
    state: StreakState
    already_processed: bool = False
    transition: str = "unchanged"


@dataclass(frozen=True)
class ManualEditResult:
    state: Any
    applied: list[str] = field(default_factory=list)
    ignored: dict[str, str] = field(default_factory=dict)


def coerce_number(name: str, raw: Any) -> float:
    if isinstance(raw, bool):
        raise ValidationError(name, raw, "expected a number")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValidationError(name, raw, "empty value")
        try:
            value = float(text)
        except ValueError as exc:
            raise ValidationError(name, raw, "expected a number") from exc
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise ValidationError(name, raw, "expected a finite non-negative number")
    return value


def coerce_count(name: str, raw: Any) -> int:
    return int(coerce_number(name, raw))


def coerce_km_to_meters(name: str, raw: Any) -> float:
    return coerce_number(name, raw) * KM_TO_METERS


def coerce_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw or "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValidationError(name, raw, "expected true or false")


def coerce_optional_day(name: str, raw: Any) -> date | None:
    if raw is None or not str(raw).strip():
        return None
    parsed = parse_day(raw)
    if parsed is None:
        raise ValidationError(name, raw, "expected a YYYY-MM-DD date")
    return parsed


Coercion = tuple[str, Callable[[str, Any], Any]]

# Form field name -> (StreakState attribute, coercion).
STREAK_FIELD_COERCIONS: dict[str, Coercion] = {
    "currentStreak": ("current_streak", coerce_count),
    "longestStreak": ("longest_streak", coerce_count),
    "totalRuns": ("total_runs", coerce_count),
    "totalDistance": ("total_distance_meters", coerce_km_to_meters),
    "totalTime": ("total_time_seconds", coerce_number),
    "totalElevation": ("total_elevation_meters", coerce_number),
    "streakStartDate": ("streak_start_date", coerce_optional_day),
    "lastRunDate": ("last_run_date", coerce_optional_day),
    "manuallyUpdated": ("manually_updated", coerce_bool),
}


def apply_field_edits(
    state: Any,
    fields: dict[str, Any],
    coercions: dict[str, Coercion],
) -> tuple[dict[str, Any], list[str], dict[str, str]]:
    changes: dict[str, Any] = {}
    applied: list[str] = []
    ignored: dict[str, str] = {}
    for key, raw in fields.items():
        entry = coercions.get(key)
        if entry is None:
            ignored[key] = "unknown field"
            continue
        attribute, coerce = entry
        try:
            changes[attribute] = coerce(key, raw)
        except ValidationError as exc:
            logger.warning("Ignoring manual edit field %s", exc)
            ignored[key] = exc.reason
            continue
        applied.append(key)
    return changes, applied, ignored


def is_counted_day(state: StreakState, last_processed: LastProcessedActivity | None, run_day: date, zone: tzinfo) -> bool:
    """True when a run on ``run_day`` is already reflected in the streak."""
    if run_day == state.last_run_date:
        return True
    if last_processed is None or last_processed.date is None or last_processed.type != RUN_TYPE:
        return False
    return last_processed.date.astimezone(zone).date() == run_day


def apply_run(
    state: StreakState,
    activity: dict[str, Any],
    last_processed: LastProcessedActivity | None,
    now: datetime,
    *,
    ran_yesterday: bool = False,
    tz: tzinfo | None = None,
) -> StreakUpdate:
    """Fold one run into the streak.

    ``ran_yesterday`` carries the result of a lookback query for runs on the
    day before ``activity``; it lets the streak continue even when
    ``last_run_date`` was never recorded for that day.
    """
    zone = tz or now.tzinfo
    if zone is None:
        raise ValueError("apply_run needs a timezone-aware 'now' or an explicit tz")
    run_day = activity_day(activity, zone) or now.astimezone(zone).date()

    if is_counted_day(state, last_processed, run_day, zone):
        return StreakUpdate(state=state, already_processed=True, transition="already_processed")

    if state.manually_updated:
        return StreakUpdate(state=state, transition="manual_mode")

    days_since_last_run = math.inf
    if state.last_run_date is not None:
        days_since_last_run = days_between(state.last_run_date, run_day)

    current = state.current_streak
    start = state.streak_start_date
    if days_since_last_run < 0:
        # Older than last_run_date: counts toward totals, never the streak.
        transition = "backfill"
    elif ran_yesterday or days_since_last_run == 1:
        current += 1
        transition = "continued"
    elif state.last_run_date is None:
        current = 1
        start = run_day
        transition = "started"
    else:
        current = 1
        start = run_day
        transition = "reset"

    if start is None:
        start = run_day

    updated = replace(
        state,
        current_streak=current,
        longest_streak=max(state.longest_streak, current),
        total_runs=state.total_runs + 1,
        total_distance_meters=state.total_distance_meters + activity_distance(activity),
        total_time_seconds=state.total_time_seconds + activity_time_seconds(activity),
        total_elevation_meters=state.total_elevation_meters + activity_elevation(activity),
        streak_start_date=start,
        last_run_date=max(run_day, state.last_run_date) if state.last_run_date else run_day,
    )
    return StreakUpdate(state=updated, transition=transition)


def manual_edit(state: StreakState, fields: dict[str, Any], now: datetime) -> ManualEditResult:
    changes, applied, ignored = apply_field_edits(state, fields, STREAK_FIELD_COERCIONS)
    changes.setdefault("manually_updated", True)
    updated = replace(state, **changes, last_manual_update=now)
    if updated.longest_streak < updated.current_streak:
        updated = replace(updated, longest_streak=updated.current_streak)
    return ManualEditResult(state=updated, applied=applied, ignored=ignored)


def reset(state: StreakState, now: datetime) -> StreakState:
    return replace(
        state,
        current_streak=0,
        longest_streak=0,
        total_runs=0,
        total_distance_meters=0.0,
        total_time_seconds=0.0,
        total_elevation_meters=0.0,
        streak_start_date=now.date(),
        last_run_date=None,
        manually_updated=False,
        last_manual_update=now,
    )


def toggle_manual_mode(state: StreakState, now: datetime) -> StreakState:
    return replace(state, manually_updated=not state.manually_updated, last_manual_update=now)
