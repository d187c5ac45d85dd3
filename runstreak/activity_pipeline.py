from __future__ import annotations

import argparse
import logging
from datetime import datetime, time as day_time, timedelta
from typing import Any, Callable

from . import description, stats_engine, streak_engine
from .config import Settings
from .dates import resolve_timezone, utc_now
from .errors import AuthExpiredError
from .models import (
    LastProcessedActivity,
    activity_day,
    activity_start,
    is_qualifying_run,
)
from .state import StateRepository
from .storage import StateStore, build_store
from .strava_client import StravaClient


logger = logging.getLogger(__name__)

POLL_LOOKBACK_DAYS = 2
RECENT_ACTIVITY_WINDOW = 5


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


class _Stage:
    def __init__(self) -> None:
        self.name = "receive"

    def __call__(self, name: str) -> None:
        self.name = name


class ActivityIngestor:
    """Runs one Strava activity through streak, stats and description updates."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        strava_client: StravaClient,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.strava = strava_client
        self.repository = StateRepository(settings, store)
        self.tz = resolve_timezone(settings.timezone)
        self.now_fn = now_fn

    def _now(self) -> datetime:
        return self.now_fn().astimezone(self.tz)

    def _is_run(self, activity: dict[str, Any]) -> bool:
        return is_qualifying_run(activity, self.settings.min_run_distance_meters)

    def _error_result(self, exc: Exception, stage: str, activity_id: Any) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": "error",
            "stage": stage,
            "activity_id": activity_id,
            "error": str(exc),
        }
        if isinstance(exc, AuthExpiredError):
            result["reauth_required"] = True
        logger.exception("Ingestion of activity %s failed at stage '%s'.", activity_id, stage)
        self.repository.record_status("cycle", status="error", error=f"{stage}: {exc}", last_activity_id=activity_id)
        return result

    def ingest(self, activity_id: int) -> dict[str, Any]:
        """Fetch an activity by id (webhook path) and process it."""
        try:
            activity = self.strava.get_activity(activity_id)
        except Exception as exc:
            return self._error_result(exc, "fetch_activity", activity_id)
        return self.process_activity(activity)

    def process_activity(self, activity: dict[str, Any]) -> dict[str, Any]:
        activity_id = activity.get("id")
        stage = _Stage()
        try:
            with self.repository.locked() as acquired:
                if not acquired:
                    result = {"status": "locked", "activity_id": activity_id}
                else:
                    result = self._process_locked(activity, stage)
        except Exception as exc:
            return self._error_result(exc, stage.name, activity_id)
        self.repository.record_status("cycle", status=result["status"], last_activity_id=activity_id)
        return result

    def _process_locked(self, activity: dict[str, Any], stage: _Stage) -> dict[str, Any]:
        activity_id = activity.get("id")
        now = self._now()

        stage("dedup")
        watermark = self.repository.load_watermark()
        started = activity_start(activity)
        if watermark.date is not None and started == watermark.date and watermark.id == activity_id:
            if self._is_run(activity):
                return self._refresh_processed(activity_id, stage)
        if watermark.date is not None and (started is None or started <= watermark.date):
            logger.info("Skipping activity %s: not newer than last processed %s.", activity_id, watermark.id)
            return {"status": "skipped", "activity_id": activity_id}

        day = activity_day(activity, self.tz) or now.date()
        max_age = self.settings.ingest_max_age_days
        if max_age > 0 and day < now.date() - timedelta(days=max_age):
            logger.info("Ignoring old activity %s from %s.", activity_id, day.isoformat())
            return {"status": "ignored_old", "activity_id": activity_id}

        if not self._is_run(activity):
            stage("watermark")
            self.repository.save_watermark(LastProcessedActivity.from_activity(activity))
            logger.info("Recorded non-run activity %s (%s).", activity_id, activity.get("type"))
            return {"status": "recorded_non_run", "activity_id": activity_id}

        stage("load_state")
        snapshot = self.repository.load()
        streak = snapshot.streak

        ran_yesterday = False
        needs_lookback = (
            not streak.manually_updated
            and streak.last_run_date != day - timedelta(days=1)
            and not streak_engine.is_counted_day(streak, watermark, day, self.tz)
        )
        if needs_lookback:
            stage("lookback")
            ran_yesterday = self._ran_on(day - timedelta(days=1), exclude_id=activity_id)

        stage("streak")
        update = streak_engine.apply_run(
            streak,
            activity,
            watermark,
            now,
            ran_yesterday=ran_yesterday,
            tz=self.tz,
        )
        if update.already_processed:
            logger.info("Run %s falls on already counted day %s; streak unchanged.", activity_id, day.isoformat())

        if snapshot.last_counted_activity_id == activity_id:
            logger.info("Run %s already in stats; refreshing description only.", activity_id)
            stored = snapshot
        else:
            stage("stats")
            stats = stats_engine.apply_run(snapshot.stats, activity, now, tz=self.tz)
            stage("persist")
            stored = self.repository.save(
                update.state,
                stats,
                version=snapshot.version,
                last_counted_activity_id=activity_id,
            )

        self._push_rendered(int(activity_id), stored.streak, stored.stats, stage)

        stage("watermark")
        self.repository.save_watermark(LastProcessedActivity.from_activity(activity))

        status = "description_refreshed" if update.already_processed else "processed"
        logger.info(
            "Run %s %s: streak %s (%s), %.1f km total.",
            activity_id,
            status,
            stored.streak.current_streak,
            update.transition,
            stored.streak.total_distance_meters / 1000,
        )
        return {
            "status": status,
            "activity_id": activity_id,
            "transition": update.transition,
            "current_streak": stored.streak.current_streak,
            "longest_streak": stored.streak.longest_streak,
        }

    def _refresh_processed(self, activity_id: Any, stage: _Stage) -> dict[str, Any]:
        """Re-push the description of the last processed run without counting it again."""
        stage("load_state")
        snapshot = self.repository.load()
        logger.info("Run %s is the last processed activity; refreshing description only.", activity_id)
        self._push_rendered(int(activity_id), snapshot.streak, snapshot.stats, stage)
        return {
            "status": "description_refreshed",
            "activity_id": activity_id,
            "transition": "rerun",
            "current_streak": snapshot.streak.current_streak,
            "longest_streak": snapshot.streak.longest_streak,
        }

    def _ran_on(self, day, *, exclude_id: Any = None) -> bool:
        start_local = datetime.combine(day, day_time.min, tzinfo=self.tz)
        for candidate in self.strava.get_activities_after(start_local):
            if candidate.get("id") == exclude_id:
                continue
            if self._is_run(candidate) and activity_day(candidate, self.tz) == day:
                return True
        return False

    def _push_rendered(self, activity_id: int, streak, stats, stage: _Stage | None = None) -> str:
        stage = stage or _Stage()
        stage("fetch_description")
        current = self.strava.get_activity(activity_id)
        stage("render")
        text = description.render(
            streak,
            stats,
            current.get("description"),
            signature=self.settings.description_signature,
        )
        stage("push_description")
        self.strava.update_activity_description(activity_id, text)
        return text

    def _latest_run(self) -> dict[str, Any] | None:
        for activity in self.strava.get_recent_activities(per_page=RECENT_ACTIVITY_WINDOW):
            if self._is_run(activity):
                return activity
        return None

    def push_description(self, activity_id: int | None = None) -> dict[str, Any]:
        """Render the current state into a run's description without touching totals."""
        stage = _Stage()
        try:
            stage("select_activity")
            if activity_id is None:
                latest = self._latest_run()
                if latest is None:
                    return {"status": "no_run_found"}
                activity_id = int(latest["id"])
            stage("load_state")
            snapshot = self.repository.load()
            text = self._push_rendered(activity_id, snapshot.streak, snapshot.stats, stage)
        except Exception as exc:
            return self._error_result(exc, stage.name, activity_id)
        return {"status": "pushed", "activity_id": activity_id, "description": text}

    def refresh_last_activity(self) -> dict[str, Any]:
        try:
            activities = self.strava.get_recent_activities(per_page=1)
        except Exception as exc:
            return self._error_result(exc, "fetch_recent", None)
        if not activities:
            return {"status": "no_activities"}
        watermark = LastProcessedActivity.from_activity(activities[0])
        self.repository.save_watermark(watermark)
        logger.info("Watermark reset to latest Strava activity %s (%s).", watermark.id, watermark.type)
        return {"status": "refreshed", "watermark": watermark.to_dict()}

    def poll(self, force_update: bool = False) -> dict[str, Any]:
        now = self._now()
        watermark = self.repository.load_watermark()
        after = now - timedelta(days=POLL_LOOKBACK_DAYS)
        if watermark.date is not None and watermark.date > after:
            after = watermark.date
        try:
            activities = self.strava.get_activities_after(after)
        except Exception as exc:
            return self._error_result(exc, "poll", None)

        ordered = sorted(
            (item for item in activities if activity_start(item) is not None),
            key=lambda item: activity_start(item),
        )
        results = [self.process_activity(activity) for activity in ordered]
        if force_update and not any(item["status"] == "processed" for item in results):
            results.append(self.push_description())
        if not results:
            logger.info("No new Strava activities since %s.", after.isoformat())
            return {"status": "no_activities"}
        statuses = [item["status"] for item in results]
        return {
            "status": "error" if "error" in statuses else "polled",
            "results": results,
        }


def build_ingestor(settings: Settings | None = None, store: StateStore | None = None) -> ActivityIngestor:
    settings = settings or Settings.from_env()
    settings.ensure_state_paths()
    store = store or build_store(settings)
    return ActivityIngestor(settings, store, StravaClient(settings, store))


def run_once(force_update: bool = False, activity_id: int | None = None) -> dict[str, Any]:
    settings = Settings.from_env()
    settings.validate()
    ingestor = build_ingestor(settings)
    if activity_id is not None:
        if force_update:
            return ingestor.push_description(activity_id)
        return ingestor.ingest(activity_id)
    return ingestor.poll(force_update=force_update)


def main() -> None:
    parser = argparse.ArgumentParser(description="Update the run streak and Strava activity descriptions.")
    parser.add_argument("-f", "--force", action="store_true", help="Re-push the description of the latest run.")
    parser.add_argument(
        "-a",
        "--activity-id",
        type=int,
        default=None,
        help="Ingest a specific Strava activity ID (with --force, only re-push its description).",
    )
    args = parser.parse_args()
    settings = Settings.from_env()
    _configure_logging(settings.log_level)
    result = run_once(force_update=args.force, activity_id=args.activity_id)
    logger.info("Result: %s", result)


if __name__ == "__main__":
    main()
