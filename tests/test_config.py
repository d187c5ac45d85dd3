import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from runstreak.config import Settings


class TestConfigEnvAliases(unittest.TestCase):
    def test_reads_canonical_strava_env_names(self) -> None:
        with patch.dict(
            os.environ,
            {
                "STRAVA_CLIENT_ID": "new-id",
                "STRAVA_CLIENT_SECRET": "new-secret",
                "STRAVA_REFRESH_TOKEN": "new-refresh",
                "STRAVA_ACCESS_TOKEN": "new-access",
            },
            clear=True,
        ):
            settings = Settings.from_env()
            self.assertEqual(settings.strava_client_id, "new-id")
            self.assertEqual(settings.strava_client_secret, "new-secret")
            self.assertEqual(settings.strava_refresh_token, "new-refresh")
            self.assertEqual(settings.strava_access_token, "new-access")

    def test_legacy_client_id_alias_still_works(self) -> None:
        with patch.dict(os.environ, {"CLIENT_ID": "legacy-id", "CLIENT_SECRET": "legacy-secret"}, clear=True):
            settings = Settings.from_env()
            self.assertEqual(settings.strava_client_id, "legacy-id")
            self.assertEqual(settings.strava_client_secret, "legacy-secret")

    def test_validate_reports_missing_credentials(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
        with self.assertRaises(ValueError) as ctx:
            settings.validate()
        self.assertIn("STRAVA_CLIENT_ID", str(ctx.exception))
        self.assertIn("STRAVA_CLIENT_SECRET", str(ctx.exception))


class TestConfigDefaults(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = Settings.from_env(getenv={}.get)
        self.assertEqual(settings.poll_interval_seconds, 300)
        self.assertEqual(settings.api_port, 3000)
        self.assertEqual(settings.timezone, "UTC")
        self.assertEqual(settings.ingest_max_age_days, 1)
        self.assertEqual(settings.monthly_goal_meters, 250000.0)
        self.assertEqual(settings.yearly_goal_meters, 3250000.0)
        self.assertEqual(settings.description_signature, "📷 @DailyRunGuy")
        self.assertIsNone(settings.redis_url)
        self.assertEqual(settings.runtime_db_file.name, "runtime_state.db")

    def test_numeric_values_are_clamped_and_parsed(self) -> None:
        env = {
            "POLL_INTERVAL_SECONDS": "5",
            "API_PORT": "not-a-port",
            "MONTHLY_GOAL_KM": "300.5",
            "MIN_RUN_DISTANCE_METERS": "-10",
            "INGEST_LOCK_WAIT_SECONDS": "9999",
        }
        settings = Settings.from_env(getenv=env.get)
        self.assertEqual(settings.poll_interval_seconds, 60)
        self.assertEqual(settings.api_port, 3000)
        self.assertEqual(settings.monthly_goal_meters, 300500.0)
        self.assertEqual(settings.min_run_distance_meters, 0.0)
        self.assertEqual(settings.ingest_lock_wait_seconds, 600)

    def test_state_paths_and_callback_urls(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env = {
                "STATE_DIR": tmpdir,
                "RUNTIME_DB_FILE": "custom.db",
                "PUBLIC_BASE_URL": "https://streak.example.com/",
            }
            settings = Settings.from_env(getenv=env.get)
            self.assertEqual(settings.runtime_db_file, Path(tmpdir).resolve() / "custom.db")
            self.assertEqual(settings.webhook_callback_url, "https://streak.example.com/webhook")
            self.assertEqual(settings.oauth_redirect_uri, "https://streak.example.com/auth/callback")

    def test_explicit_redirect_uri_wins(self) -> None:
        env = {"STRAVA_REDIRECT_URI": "https://other.example.com/cb", "PUBLIC_BASE_URL": "https://streak.example.com"}
        settings = Settings.from_env(getenv=env.get)
        self.assertEqual(settings.oauth_redirect_uri, "https://other.example.com/cb")


if __name__ == "__main__":
    unittest.main()
