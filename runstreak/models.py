from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any

from .dates import local_day, parse_day, parse_utc


RUN_TYPE = "Run"


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _as_count(value: Any) -> int:
    return max(0, int(_as_number(value)))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _iso_day(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _iso_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def activity_distance(activity: dict[str, Any]) -> float:
    return _as_number(activity.get("distance"))


def activity_time_seconds(activity: dict[str, Any]) -> float:
    for key in ("moving_time", "elapsed_time"):
        value = _as_number(activity.get(key))
        if value:
            return value
    return 0.0


def activity_elevation(activity: dict[str, Any]) -> float:
    return _as_number(activity.get("total_elevation_gain"))


def activity_type(activity: dict[str, Any]) -> str:
    return str(activity.get("type") or activity.get("sport_type") or "").strip()


def is_qualifying_run(activity: dict[str, Any], min_distance_meters: float = 0.0) -> bool:
    if activity_type(activity) != RUN_TYPE:
        return False
    return activity_distance(activity) >= min_distance_meters


def activity_start(activity: dict[str, Any]) -> datetime | None:
    return parse_utc(activity.get("start_date"))


def activity_day(activity: dict[str, Any], tz: tzinfo) -> date | None:
    return local_day(activity.get("start_date"), tz)


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    total_runs: int = 0
    total_distance_meters: float = 0.0
    total_time_seconds: float = 0.0
    total_elevation_meters: float = 0.0
    streak_start_date: date | None = None
    last_run_date: date | None = None
    manually_updated: bool = False
    last_manual_update: datetime | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "StreakState":
        if not isinstance(payload, dict):
            return cls()
        current = _as_count(payload.get("current_streak", payload.get("currentStreak")))
        longest = _as_count(payload.get("longest_streak", payload.get("longestStreak")))
        return cls(
            current_streak=current,
            longest_streak=max(longest, current),
            total_runs=_as_count(payload.get("total_runs", payload.get("totalRuns"))),
            total_distance_meters=_as_number(payload.get("total_distance_meters", payload.get("totalDistance"))),
            total_time_seconds=_as_number(payload.get("total_time_seconds", payload.get("totalTime"))),
            total_elevation_meters=_as_number(payload.get("total_elevation_meters", payload.get("totalElevation"))),
            streak_start_date=parse_day(payload.get("streak_start_date", payload.get("streakStartDate"))),
            last_run_date=parse_day(payload.get("last_run_date", payload.get("lastRunDate"))),
            manually_updated=_as_bool(payload.get("manually_updated", payload.get("manuallyUpdated"))),
            last_manual_update=parse_utc(payload.get("last_manual_update", payload.get("lastManualUpdate"))),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["streak_start_date"] = _iso_day(self.streak_start_date)
        payload["last_run_date"] = _iso_day(self.last_run_date)
        payload["last_manual_update"] = _iso_datetime(self.last_manual_update)
        return payload


@dataclass(frozen=True)
class StatsState:
    monthly_distance_meters: float = 0.0
    monthly_time_seconds: float = 0.0
    monthly_elevation_meters: float = 0.0
    yearly_distance_meters: float = 0.0
    yearly_time_seconds: float = 0.0
    yearly_elevation_meters: float = 0.0
    monthly_goal_meters: float = 250_000.0
    yearly_goal_meters: float = 3_250_000.0
    manually_updated: bool = False
    last_updated: datetime | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, **defaults: Any) -> "StatsState":
        base = cls(**defaults)
        if not isinstance(payload, dict):
            return base
        return cls(
            monthly_distance_meters=_as_number(payload.get("monthly_distance_meters")),
            monthly_time_seconds=_as_number(payload.get("monthly_time_seconds")),
            monthly_elevation_meters=_as_number(payload.get("monthly_elevation_meters")),
            yearly_distance_meters=_as_number(payload.get("yearly_distance_meters")),
            yearly_time_seconds=_as_number(payload.get("yearly_time_seconds")),
            yearly_elevation_meters=_as_number(payload.get("yearly_elevation_meters")),
            monthly_goal_meters=_as_number(payload.get("monthly_goal_meters"), base.monthly_goal_meters),
            yearly_goal_meters=_as_number(payload.get("yearly_goal_meters"), base.yearly_goal_meters),
            manually_updated=_as_bool(payload.get("manually_updated")),
            last_updated=parse_utc(payload.get("last_updated")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_updated"] = _iso_datetime(self.last_updated)
        return payload


@dataclass(frozen=True)
class LastProcessedActivity:
    id: int | None = None
    date: datetime | None = None
    type: str | None = None
    distance_meters: float = 0.0

    @classmethod
    def from_activity(cls, activity: dict[str, Any]) -> "LastProcessedActivity":
        raw_id = activity.get("id")
        return cls(
            id=int(raw_id) if raw_id is not None else None,
            date=activity_start(activity),
            type=activity_type(activity) or None,
            distance_meters=activity_distance(activity),
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "LastProcessedActivity":
        if not isinstance(payload, dict):
            return cls()
        raw_id = payload.get("id")
        try:
            parsed_id = int(raw_id) if raw_id is not None else None
        except (TypeError, ValueError):
            parsed_id = None
        return cls(
            id=parsed_id,
            date=parse_utc(payload.get("date")),
            type=str(payload["type"]) if payload.get("type") else None,
            distance_meters=_as_number(payload.get("distance_meters", payload.get("distance"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": _iso_datetime(self.date),
            "type": self.type,
            "distance_meters": self.distance_meters,
        }


@dataclass(frozen=True)
class WebhookConfig:
    verify_token: str = ""
    secret: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "WebhookConfig":
        if not isinstance(payload, dict):
            return cls()
        secret = str(payload.get("secret") or "").strip()
        return cls(
            verify_token=str(payload.get("verify_token") or "").strip(),
            secret=secret or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"verify_token": self.verify_token, "secret": self.secret}


@dataclass(frozen=True)
class StravaTokens:
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = None
    athlete: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "StravaTokens":
        if not isinstance(payload, dict):
            return cls()
        expires_raw = payload.get("expires_at")
        try:
            expires_at = int(expires_raw) if expires_raw is not None else None
        except (TypeError, ValueError):
            expires_at = None
        athlete = payload.get("athlete")
        return cls(
            access_token=str(payload.get("access_token") or "").strip() or None,
            refresh_token=str(payload.get("refresh_token") or "").strip() or None,
            expires_at=expires_at,
            athlete=athlete if isinstance(athlete, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def is_expired(self, now_epoch: float, *, leeway_seconds: int = 60) -> bool:
        if self.expires_at is None:
            return False
        return now_epoch + leeway_seconds >= self.expires_at
