import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from runstreak.api_server import OAUTH_STATE_KEY, create_app
from runstreak.config import Settings
from runstreak.errors import TransientExternalError
from runstreak.models import StravaTokens
from runstreak.state import StateRepository
from runstreak.storage import MemoryBackend, StateStore
from runstreak.webhook import SIGNATURE_HEADER, expected_signature


class _FakeStrava:
    def __init__(self):
        start = (datetime.now(timezone.utc) - timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.activities = {
            77: {"id": 77, "type": "Run", "start_date": start, "distance": 8000.0, "moving_time": 2400, "description": "Hills"}
        }
        self.updates = []
        self.subscriptions = []
        self.fail_create = False
        self.tokens = StravaTokens(access_token="a", refresh_token="r", athlete={"id": 1, "firstname": "Pat"})

    def is_authenticated(self):
        return bool(self.tokens.refresh_token)

    def load_tokens(self):
        return self.tokens

    def clear_tokens(self):
        self.tokens = StravaTokens()

    def authorization_url(self, redirect_uri, *, state=None):
        return f"https://www.strava.com/oauth/authorize?redirect_uri={redirect_uri}&state={state}"

    def exchange_code(self, code):
        self.tokens = StravaTokens(access_token="new", refresh_token="new-r", athlete={"id": 1, "firstname": "Pat"})
        return self.tokens

    def get_activity(self, activity_id):
        return dict(self.activities[activity_id])

    def get_recent_activities(self, per_page=1):
        return list(self.activities.values())[:per_page]

    def get_activities_after(self, after_dt, per_page=200):
        return list(self.activities.values())

    def update_activity_description(self, activity_id, description):
        self.updates.append((activity_id, description))
        return {"id": activity_id}

    def create_push_subscription(self, callback_url, verify_token):
        if self.fail_create:
            raise TransientExternalError("Strava POST /push_subscriptions returned 400.", status_code=400)
        self.subscriptions.append({"id": 5, "callback_url": callback_url, "verify_token": verify_token})
        return {"id": 5}

    def list_push_subscriptions(self):
        return [{"id": item["id"], "callback_url": item["callback_url"]} for item in self.subscriptions]

    def delete_push_subscription(self, subscription_id):
        self.subscriptions = [item for item in self.subscriptions if item["id"] != subscription_id]


class _RecordingDispatcher:
    def __init__(self):
        self.submitted = []

    def submit(self, activity_id):
        self.submitted.append(activity_id)


class TestApiServer(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        env = {
            "STATE_DIR": self._tmp.name,
            "STRAVA_CLIENT_ID": "cid",
            "STRAVA_CLIENT_SECRET": "secret",
            "WEBHOOK_VERIFY_TOKEN": "verify-me",
            "WEBHOOK_SECRET": "hook-secret",
            "PUBLIC_BASE_URL": "https://streak.example.com",
            "INGEST_LOCK_WAIT_SECONDS": "0",
        }
        self.settings = Settings.from_env(getenv=env.get)
        self.store = StateStore(MemoryBackend())
        self.strava = _FakeStrava()
        self.dispatcher = _RecordingDispatcher()
        app = create_app(self.settings, self.store, self.strava, dispatcher=self.dispatcher)
        app.config["TESTING"] = True
        self.client = app.test_client()
        self.repository = StateRepository(self.settings, self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_health_reports_store(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["store"]["backend"], "memory")
        self.assertTrue(payload["strava_authenticated"])

    def test_state_endpoints_return_defaults(self) -> None:
        payload = self.client.get("/state").get_json()
        self.assertEqual(payload["streak"]["current_streak"], 0)
        self.assertEqual(payload["stats"]["monthly_goal_meters"], 250000.0)
        self.assertIsNone(payload["last_processed_activity"]["id"])
        self.assertIn("streak", self.client.get("/streak").get_json())
        self.assertIn("stats", self.client.get("/stats").get_json())

    def test_admin_and_forms_render(self) -> None:
        for path in ("/admin", "/manual/streak", "/manual/stats"):
            with self.subTest(path=path):
                response = self.client.get(path)
                self.assertEqual(response.status_code, 200)
                self.assertIn(b"<form", response.data)

    def test_manual_streak_json_edit(self) -> None:
        response = self.client.post("/manual/streak", json={"currentStreak": 30, "totalDistance": "10", "nope": 1})
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["streak"]["current_streak"], 30)
        self.assertEqual(payload["streak"]["longest_streak"], 30)
        self.assertEqual(payload["streak"]["total_distance_meters"], 10000.0)
        self.assertTrue(payload["streak"]["manually_updated"])
        self.assertEqual(payload["ignored"], {"nope": "unknown field"})
        self.assertEqual(self.repository.load().streak.current_streak, 30)

    def test_manual_stats_form_post_redirects_to_admin(self) -> None:
        response = self.client.post("/manual/stats", data={"monthlyDistance": "12.5", "yearlyGoal": "2000"})
        self.assertEqual(response.status_code, 302)
        self.assertIn("/admin", response.headers["Location"])
        stats = self.repository.load().stats
        self.assertEqual(stats.monthly_distance_meters, 12500.0)
        self.assertEqual(stats.yearly_goal_meters, 2000000.0)
        self.assertTrue(stats.manually_updated)

    def test_resets_and_toggles(self) -> None:
        self.client.post("/manual/streak", json={"currentStreak": 9})
        self.client.post("/manual/stats", json={"monthlyDistance": 50, "yearlyDistance": 500})

        payload = self.client.post("/stats/reset/monthly", json={}).get_json()
        self.assertEqual(payload["stats"]["monthly_distance_meters"], 0.0)
        self.assertEqual(payload["stats"]["yearly_distance_meters"], 500000.0)

        payload = self.client.post("/stats/reset/yearly", json={}).get_json()
        self.assertEqual(payload["stats"]["yearly_distance_meters"], 0.0)

        payload = self.client.post("/streak/reset", json={}).get_json()
        self.assertEqual(payload["streak"]["current_streak"], 0)
        self.assertFalse(payload["streak"]["manually_updated"])

        payload = self.client.post("/admin/toggle/streak", json={}).get_json()
        self.assertTrue(payload["streak"]["manually_updated"])
        payload = self.client.post("/admin/toggle/stats", json={}).get_json()
        self.assertTrue(payload["stats"]["manually_updated"])

    def test_mutation_while_locked_returns_conflict(self) -> None:
        self.store.acquire_lock("ingest", "other", 300)
        response = self.client.post("/streak/reset", json={})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["status"], "locked")

    def test_rerun_activity_ingests(self) -> None:
        response = self.client.post("/rerun/activity/77")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["result"]["status"], "processed")
        self.assertEqual(self.strava.updates[0][0], 77)

    def test_rerun_same_activity_twice_repushes_without_recounting(self) -> None:
        self.client.post("/rerun/activity/77")
        response = self.client.post("/rerun/activity/77")
        self.assertEqual(response.status_code, 200)
        result = response.get_json()["result"]
        self.assertEqual(result["status"], "description_refreshed")
        self.assertEqual(result["transition"], "rerun")
        self.assertEqual(len(self.strava.updates), 2)
        snapshot = self.repository.load()
        self.assertEqual(snapshot.streak.total_runs, 1)
        self.assertEqual(snapshot.stats.yearly_distance_meters, 8000.0)

    def test_push_latest_and_refresh_watermark(self) -> None:
        response = self.client.post("/push/latest")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "pushed")
        response = self.client.post("/admin/refresh-last-activity")
        self.assertEqual(response.get_json()["watermark"]["id"], 77)

    def test_webhook_handshake(self) -> None:
        response = self.client.get(
            "/webhook",
            query_string={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "abc"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"hub.challenge": "abc"})
        response = self.client.get(
            "/webhook",
            query_string={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "abc"},
        )
        self.assertEqual(response.status_code, 403)

    def test_webhook_event_is_dispatched(self) -> None:
        body = json.dumps({"object_type": "activity", "aspect_type": "create", "object_id": 77}).encode("utf-8")
        response = self.client.post(
            "/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: expected_signature(body, "hook-secret")},
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()["queued"])
        self.assertEqual(self.dispatcher.submitted, [77])

    def test_webhook_bad_signature_is_rejected(self) -> None:
        body = json.dumps({"object_type": "activity", "aspect_type": "create", "object_id": 77}).encode("utf-8")
        response = self.client.post(
            "/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: "sha1=deadbeef"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.dispatcher.submitted, [])

    def test_webhook_ignores_updates(self) -> None:
        response = self.client.post("/webhook", json={"object_type": "activity", "aspect_type": "update", "object_id": 77})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.get_json()["queued"])
        self.assertEqual(self.dispatcher.submitted, [])

    def test_setup_webhook_lifecycle(self) -> None:
        response = self.client.post("/setup-webhook")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["callback_url"], "https://streak.example.com/webhook")
        self.assertEqual(self.strava.subscriptions[0]["verify_token"], "verify-me")
        listed = self.client.get("/setup-webhook").get_json()
        self.assertEqual(listed["subscriptions"][0]["id"], 5)
        response = self.client.delete("/setup-webhook/5")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.strava.subscriptions, [])

    def test_setup_webhook_failure_lists_existing(self) -> None:
        self.strava.fail_create = True
        response = self.client.post("/setup-webhook")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["subscriptions"], [])

    def test_oauth_round_trip(self) -> None:
        response = self.client.get("/auth/strava")
        self.assertEqual(response.status_code, 302)
        state = self.store.get(OAUTH_STATE_KEY)
        self.assertIn(f"state={state}", response.headers["Location"])

        response = self.client.get("/auth/callback", query_string={"code": "c1", "state": "forged"})
        self.assertEqual(response.status_code, 400)

        response = self.client.get("/auth/callback", query_string={"code": "c1", "state": state})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["athlete"]["firstname"], "Pat")
        self.assertIsNone(self.store.get(OAUTH_STATE_KEY))


if __name__ == "__main__":
    unittest.main()
