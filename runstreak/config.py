from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv


load_dotenv()


EnvGetter = Callable[[str], str | None]


def _str_env(*names: str, default: str = "", getenv: EnvGetter = os.getenv) -> str:
    for name in names:
        value = getenv(name)
        if value is not None:
            return value.strip()
    return default


def _optional_str_env(*names: str, getenv: EnvGetter = os.getenv) -> str | None:
    value = _str_env(*names, default="", getenv=getenv)
    return value or None


def _int_env(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> int:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = int(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


def _float_env(
    name: str,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> float:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = float(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


@dataclass(frozen=True)
class Settings:
    strava_client_id: str
    strava_client_secret: str
    strava_refresh_token: str
    strava_access_token: str | None
    strava_redirect_uri: str | None
    public_base_url: str | None

    webhook_verify_token: str
    webhook_secret: str | None

    state_dir: Path
    runtime_db_file: Path
    redis_url: str | None

    timezone: str
    log_level: str
    poll_interval_seconds: int
    api_port: int

    ingest_lock_ttl_seconds: int
    ingest_lock_wait_seconds: int
    ingest_max_age_days: int
    min_run_distance_meters: float

    monthly_goal_meters: float
    yearly_goal_meters: float
    description_signature: str

    @classmethod
    def from_env(cls, getenv: EnvGetter = os.getenv) -> "Settings":
        state_dir = Path(_str_env("STATE_DIR", default="state", getenv=getenv) or "state").resolve()
        runtime_db_name = _str_env("RUNTIME_DB_FILE", default="runtime_state.db", getenv=getenv)
        runtime_db_path = Path(runtime_db_name or "runtime_state.db")
        if not runtime_db_path.is_absolute():
            runtime_db_path = state_dir / runtime_db_path

        return cls(
            strava_client_id=_str_env("STRAVA_CLIENT_ID", "CLIENT_ID", getenv=getenv),
            strava_client_secret=_str_env("STRAVA_CLIENT_SECRET", "CLIENT_SECRET", getenv=getenv),
            strava_refresh_token=_str_env("STRAVA_REFRESH_TOKEN", "REFRESH_TOKEN", getenv=getenv),
            strava_access_token=_optional_str_env("STRAVA_ACCESS_TOKEN", "ACCESS_TOKEN", getenv=getenv),
            strava_redirect_uri=_optional_str_env("STRAVA_REDIRECT_URI", "REDIRECT_URI", getenv=getenv),
            public_base_url=_optional_str_env("PUBLIC_BASE_URL", "RENDER_EXTERNAL_URL", getenv=getenv),
            webhook_verify_token=_str_env("WEBHOOK_VERIFY_TOKEN", getenv=getenv),
            webhook_secret=_optional_str_env("WEBHOOK_SECRET", getenv=getenv),
            state_dir=state_dir,
            runtime_db_file=runtime_db_path,
            redis_url=_optional_str_env("REDIS_URL", getenv=getenv),
            timezone=_str_env("TZ", "TIMEZONE", default="UTC", getenv=getenv) or "UTC",
            log_level=_str_env("LOG_LEVEL", default="INFO", getenv=getenv).upper() or "INFO",
            poll_interval_seconds=_int_env("POLL_INTERVAL_SECONDS", 300, minimum=60, getenv=getenv),
            api_port=_int_env("API_PORT", 3000, minimum=1, maximum=65535, getenv=getenv),
            ingest_lock_ttl_seconds=_int_env("INGEST_LOCK_TTL_SECONDS", 300, minimum=30, maximum=3600, getenv=getenv),
            ingest_lock_wait_seconds=_int_env("INGEST_LOCK_WAIT_SECONDS", 30, minimum=0, maximum=600, getenv=getenv),
            ingest_max_age_days=_int_env("INGEST_MAX_AGE_DAYS", 1, minimum=0, maximum=3650, getenv=getenv),
            min_run_distance_meters=_float_env("MIN_RUN_DISTANCE_METERS", 0.0, minimum=0.0, getenv=getenv),
            monthly_goal_meters=_float_env("MONTHLY_GOAL_KM", 250.0, minimum=0.0, getenv=getenv) * 1000,
            yearly_goal_meters=_float_env("YEARLY_GOAL_KM", 3250.0, minimum=0.0, getenv=getenv) * 1000,
            description_signature=_str_env(
                "DESCRIPTION_SIGNATURE",
                default="📷 @DailyRunGuy",
                getenv=getenv,
            )
            or "📷 @DailyRunGuy",
        )

    @property
    def webhook_callback_url(self) -> str:
        base = self.public_base_url or f"http://localhost:{self.api_port}"
        return base.rstrip("/") + "/webhook"

    @property
    def oauth_redirect_uri(self) -> str:
        if self.strava_redirect_uri:
            return self.strava_redirect_uri
        base = self.public_base_url or f"http://localhost:{self.api_port}"
        return base.rstrip("/") + "/auth/callback"

    def validate(self) -> None:
        missing = []
        if not self.strava_client_id:
            missing.append("STRAVA_CLIENT_ID")
        if not self.strava_client_secret:
            missing.append("STRAVA_CLIENT_SECRET")
        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required environment variables: {missing_str}")

    def ensure_state_paths(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
