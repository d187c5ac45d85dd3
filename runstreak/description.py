from __future__ import annotations

import math

from .models import StatsState, StreakState


STREAK_HEADER = "🏃🏻‍♂️Daily Run Streak:"
TOTALS_GLYPH = "📊"
MONTHLY_LABEL = "Monthly:"
YEARLY_LABEL = "Yearly:"
MONTHLY_FILLED = "🔵"
YEARLY_FILLED = "🟢"
EMPTY_SEGMENT = "⚪️"
CELEBRATION = "🎉"
DEFAULT_SIGNATURE = "📷 @DailyRunGuy"
PROGRESS_SEGMENTS = 10

_GENERATED_MARKERS = (
    "Daily Run Streak:",
    TOTALS_GLYPH,
    MONTHLY_LABEL,
    YEARLY_LABEL,
    MONTHLY_FILLED,
    YEARLY_FILLED,
    "⚪",
)


def format_time(seconds: float) -> str:
    total = max(0, int(seconds or 0))
    hours = total // 3600
    minutes = (total % 3600) // 60
    return f"{hours}h {minutes}m"


def format_distance(meters: float) -> str:
    return f"{(meters or 0) / 1000:.1f} km"


def format_elevation(meters: float) -> str:
    return f"{int(round(meters or 0))} m"


def goal_fraction(distance_meters: float, goal_meters: float) -> float:
    if not goal_meters or goal_meters <= 0:
        return 0.0
    return max(0.0, distance_meters / goal_meters)


def progress_bar(distance_meters: float, goal_meters: float, *, filled: str, segments: int = PROGRESS_SEGMENTS) -> str:
    completed = math.floor(min(goal_fraction(distance_meters, goal_meters), 1.0) * segments)
    return filled * completed + EMPTY_SEGMENT * (segments - completed)


def strip_generated_block(description: str | None, *, signature: str = DEFAULT_SIGNATURE) -> str:
    if not description:
        return ""
    markers = _GENERATED_MARKERS + ((signature.strip(),) if signature.strip() else ())
    kept = [
        line
        for line in description.splitlines()
        if line.strip() and not any(marker in line for marker in markers)
    ]
    return "\n".join(kept).strip()


def _period_line(label: str, distance: float, goal: float, elevation: float) -> str:
    line = f"{label} {format_distance(distance)}/{format_distance(goal)} | ⛰️ {format_elevation(elevation)}"
    if goal_fraction(distance, goal) >= 1.0:
        line = f"{line} {CELEBRATION}"
    return line


def render(
    streak: StreakState,
    stats: StatsState,
    previous_description: str | None,
    *,
    signature: str = DEFAULT_SIGNATURE,
) -> str:
    block = "\n".join(
        [
            f"{STREAK_HEADER} Day {streak.current_streak} 👍🏻",
            (
                f"{TOTALS_GLYPH} {format_distance(streak.total_distance_meters)}"
                f" | ⏱️ {format_time(streak.total_time_seconds)}"
                f" | ⛰️ {format_elevation(streak.total_elevation_meters)}"
            ),
            _period_line(MONTHLY_LABEL, stats.monthly_distance_meters, stats.monthly_goal_meters, stats.monthly_elevation_meters),
            progress_bar(stats.monthly_distance_meters, stats.monthly_goal_meters, filled=MONTHLY_FILLED),
            _period_line(YEARLY_LABEL, stats.yearly_distance_meters, stats.yearly_goal_meters, stats.yearly_elevation_meters),
            progress_bar(stats.yearly_distance_meters, stats.yearly_goal_meters, filled=YEARLY_FILLED),
            signature,
        ]
    )
    existing = strip_generated_block(previous_description, signature=signature)
    if existing:
        return f"{block}\n\n{existing}"
    return block
