from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from .config import Settings
from .models import LastProcessedActivity, StatsState, StreakState, WebhookConfig
from .storage import StateStore


logger = logging.getLogger(__name__)

STATE_KEY = "streak_stats"
WATERMARK_KEY = "last_processed_activity"
WEBHOOK_CONFIG_KEY = "webhook_config"
INGEST_LOCK_NAME = "ingest"
LOCK_POLL_SECONDS = 0.2


@dataclass(frozen=True)
class StateSnapshot:
    streak: StreakState
    stats: StatsState
    version: int = 0
    last_counted_activity_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "streak": self.streak.to_dict(),
            "stats": self.stats.to_dict(),
            "version": self.version,
            "last_counted_activity_id": self.last_counted_activity_id,
        }


class StateRepository:
    """Round-trips streak and stats through the store as one record."""

    def __init__(self, settings: Settings, store: StateStore):
        self.settings = settings
        self.store = store

    def _stats_defaults(self) -> dict[str, Any]:
        return {
            "monthly_goal_meters": self.settings.monthly_goal_meters,
            "yearly_goal_meters": self.settings.yearly_goal_meters,
        }

    def load(self) -> StateSnapshot:
        payload = self.store.get(STATE_KEY)
        if not isinstance(payload, dict):
            snapshot = StateSnapshot(streak=StreakState(), stats=StatsState(**self._stats_defaults()))
            self.store.set(STATE_KEY, snapshot.to_dict())
            logger.info("Initialized new streak/stats state.")
            return snapshot
        try:
            version = int(payload.get("version") or 0)
        except (TypeError, ValueError):
            version = 0
        try:
            counted_raw = payload.get("last_counted_activity_id")
            counted_id = int(counted_raw) if counted_raw is not None else None
        except (TypeError, ValueError):
            counted_id = None
        return StateSnapshot(
            streak=StreakState.from_dict(payload.get("streak")),
            stats=StatsState.from_dict(payload.get("stats"), **self._stats_defaults()),
            version=version,
            last_counted_activity_id=counted_id,
        )

    def save(
        self,
        streak: StreakState,
        stats: StatsState,
        *,
        version: int,
        last_counted_activity_id: int | None = None,
    ) -> StateSnapshot:
        """Write the record with ``version + 1``.

        ``version`` is a change counter for operators, not a concurrency
        check; writers are serialized by the ``ingest`` lock.
        """
        snapshot = StateSnapshot(
            streak=streak,
            stats=stats,
            version=version + 1,
            last_counted_activity_id=last_counted_activity_id,
        )
        self.store.set(STATE_KEY, snapshot.to_dict())
        return snapshot

    def mutate(self, change: Callable[[StateSnapshot], tuple[StreakState, StatsState]]) -> StateSnapshot | None:
        """Apply ``change`` under the ingestion lock. Returns None when the lock is busy."""
        with self.locked() as acquired:
            if not acquired:
                return None
            current = self.load()
            streak, stats = change(current)
            return self.save(
                streak,
                stats,
                version=current.version,
                last_counted_activity_id=current.last_counted_activity_id,
            )

    def load_watermark(self) -> LastProcessedActivity:
        return LastProcessedActivity.from_dict(self.store.get(WATERMARK_KEY))

    def save_watermark(self, watermark: LastProcessedActivity) -> None:
        self.store.set(WATERMARK_KEY, watermark.to_dict())

    def load_webhook_config(self) -> WebhookConfig:
        stored = WebhookConfig.from_dict(self.store.get(WEBHOOK_CONFIG_KEY))
        if stored.verify_token or stored.secret:
            return stored
        seeded = WebhookConfig(
            verify_token=self.settings.webhook_verify_token,
            secret=self.settings.webhook_secret,
        )
        if seeded.verify_token or seeded.secret:
            self.store.set(WEBHOOK_CONFIG_KEY, seeded.to_dict())
        return seeded

    def save_webhook_config(self, config: WebhookConfig) -> None:
        self.store.set(WEBHOOK_CONFIG_KEY, config.to_dict())

    def record_status(self, prefix: str, *, status: str, error: str | None = None, **extra: Any) -> None:
        now_iso = datetime.now(timezone.utc).isoformat()
        values: dict[str, Any] = {
            f"{prefix}.last_status": status,
            f"{prefix}.last_status_at_utc": now_iso,
        }
        for key, value in extra.items():
            if value is not None:
                values[f"{prefix}.{key}"] = value
        if error:
            values[f"{prefix}.last_error"] = error
            values[f"{prefix}.last_error_at_utc"] = now_iso
        self.store.set_many(values)

    @contextmanager
    def locked(self, *, wait_seconds: float | None = None) -> Iterator[bool]:
        owner = f"{uuid.uuid4()}:{int(time.time())}"
        wait = self.settings.ingest_lock_wait_seconds if wait_seconds is None else wait_seconds
        deadline = time.monotonic() + max(0.0, float(wait))
        acquired = self.store.acquire_lock(INGEST_LOCK_NAME, owner, self.settings.ingest_lock_ttl_seconds)
        while not acquired and time.monotonic() < deadline:
            time.sleep(LOCK_POLL_SECONDS)
            acquired = self.store.acquire_lock(INGEST_LOCK_NAME, owner, self.settings.ingest_lock_ttl_seconds)
        if not acquired:
            logger.info(
                "State lock busy (owner=%s); gave up after %ss.",
                self.store.lock_owner(INGEST_LOCK_NAME),
                wait,
            )
        try:
            yield acquired
        finally:
            if acquired:
                self.store.release_lock(INGEST_LOCK_NAME, owner)
