from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from flask import Flask, redirect, render_template, request

from . import stats_engine, streak_engine
from .activity_pipeline import ActivityIngestor, _configure_logging
from .config import Settings
from .dates import resolve_timezone, utc_now
from .errors import RunstreakError
from .models import WebhookConfig
from .state import StateSnapshot
from .storage import StateStore, build_store
from .strava_client import StravaClient
from .webhook import SIGNATURE_HEADER, WebhookDispatcher, handshake, should_ingest, verify_signature


logger = logging.getLogger(__name__)

OAUTH_STATE_KEY = "oauth.state"
STATUS_PREFIXES = ("cycle.", "webhook.", "worker.")


def _result_status_code(result: dict[str, Any]) -> int:
    status = str(result.get("status") or "")
    if status == "error":
        return 401 if result.get("reauth_required") else 502
    if status == "locked":
        return 409
    return 200


def _form_fields() -> dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True)
        return dict(payload) if isinstance(payload, dict) else {}
    return request.form.to_dict()


def _redirect_admin(**params: str):
    query = urlencode({key: value for key, value in params.items() if value})
    return redirect(f"/admin?{query}" if query else "/admin", code=302)


def create_app(
    settings: Settings | None = None,
    store: StateStore | None = None,
    strava_client: StravaClient | None = None,
    *,
    dispatcher: WebhookDispatcher | None = None,
) -> Flask:
    settings = settings or Settings.from_env()
    settings.ensure_state_paths()
    store = store or build_store(settings)
    strava_client = strava_client or StravaClient(settings, store)
    ingestor = ActivityIngestor(settings, store, strava_client)
    repository = ingestor.repository
    dispatcher = dispatcher or WebhookDispatcher(repository, ingestor.ingest)
    tz = resolve_timezone(settings.timezone)

    app = Flask(__name__)
    app.config["RUNSTREAK_INGESTOR"] = ingestor
    app.config["RUNSTREAK_DISPATCHER"] = dispatcher

    def _now() -> datetime:
        return utc_now().astimezone(tz)

    def _state_payload(snapshot: StateSnapshot) -> dict[str, Any]:
        return {
            "status": "ok",
            "streak": snapshot.streak.to_dict(),
            "stats": snapshot.stats.to_dict(),
            "version": snapshot.version,
        }

    def _mutation_response(snapshot: StateSnapshot | None, message: str, extra: dict[str, Any] | None = None):
        if snapshot is None:
            payload = {"status": "locked", "error": "state is being updated, try again"}
            if request.is_json:
                return payload, 409
            return _redirect_admin(error=payload["error"])
        if request.is_json:
            body = _state_payload(snapshot)
            body["message"] = message
            body.update(extra or {})
            return body, 200
        return _redirect_admin(message=message)

    @app.get("/health")
    def health() -> tuple[dict, int]:
        return {
            "status": "ok",
            "store": store.health_check(),
            "strava_authenticated": strava_client.is_authenticated(),
        }, 200

    @app.get("/state")
    def state_get() -> tuple[dict, int]:
        payload = _state_payload(repository.load())
        payload["last_processed_activity"] = repository.load_watermark().to_dict()
        return payload, 200

    @app.get("/streak")
    def streak_get() -> tuple[dict, int]:
        return {"status": "ok", "streak": repository.load().streak.to_dict()}, 200

    @app.get("/stats")
    def stats_get() -> tuple[dict, int]:
        return {"status": "ok", "stats": repository.load().stats.to_dict()}, 200

    @app.get("/admin")
    def admin_page() -> str:
        snapshot = repository.load()
        statuses = {key: store.get(key) for prefix in STATUS_PREFIXES for key in store.keys(prefix)}
        tokens = strava_client.load_tokens()
        return render_template(
            "admin.html",
            streak=snapshot.streak,
            stats=snapshot.stats,
            watermark=repository.load_watermark(),
            store_health=store.health_check(),
            athlete=tokens.athlete,
            authenticated=strava_client.is_authenticated(),
            statuses=statuses,
            message=request.args.get("message"),
            error=request.args.get("error"),
        )

    @app.get("/manual/streak")
    def manual_streak_form() -> str:
        return render_template("manual_streak.html", streak=repository.load().streak)

    @app.post("/manual/streak")
    def manual_streak_post():
        fields = _form_fields()
        outcome: dict[str, Any] = {}

        def change(current: StateSnapshot):
            edit = streak_engine.manual_edit(current.streak, fields, _now())
            outcome.update(applied=edit.applied, ignored=edit.ignored)
            return edit.state, current.stats

        snapshot = repository.mutate(change)
        return _mutation_response(snapshot, "Streak updated manually. Your values will be preserved.", outcome)

    @app.get("/manual/stats")
    def manual_stats_form() -> str:
        return render_template("manual_stats.html", stats=repository.load().stats)

    @app.post("/manual/stats")
    def manual_stats_post():
        fields = _form_fields()
        outcome: dict[str, Any] = {}

        def change(current: StateSnapshot):
            edit = stats_engine.manual_edit(current.stats, fields, _now())
            outcome.update(applied=edit.applied, ignored=edit.ignored)
            return current.streak, edit.state

        snapshot = repository.mutate(change)
        return _mutation_response(snapshot, "Stats updated manually. Your values will be preserved.", outcome)

    @app.post("/streak/reset")
    def streak_reset_post():
        snapshot = repository.mutate(lambda current: (streak_engine.reset(current.streak, _now()), current.stats))
        return _mutation_response(snapshot, "Streak reset.")

    @app.post("/stats/reset/monthly")
    def stats_reset_monthly_post():
        snapshot = repository.mutate(lambda current: (current.streak, stats_engine.reset_monthly(current.stats, _now())))
        return _mutation_response(snapshot, "Monthly stats reset.")

    @app.post("/stats/reset/yearly")
    def stats_reset_yearly_post():
        snapshot = repository.mutate(lambda current: (current.streak, stats_engine.reset_yearly(current.stats, _now())))
        return _mutation_response(snapshot, "Yearly stats reset.")

    @app.post("/admin/toggle/streak")
    def toggle_streak_post():
        snapshot = repository.mutate(
            lambda current: (streak_engine.toggle_manual_mode(current.streak, _now()), current.stats)
        )
        return _mutation_response(snapshot, "Streak update mode toggled.")

    @app.post("/admin/toggle/stats")
    def toggle_stats_post():
        snapshot = repository.mutate(
            lambda current: (current.streak, stats_engine.toggle_manual_mode(current.stats, _now()))
        )
        return _mutation_response(snapshot, "Stats update mode toggled.")

    @app.post("/admin/refresh-last-activity")
    def refresh_last_activity_post() -> tuple[dict, int]:
        result = ingestor.refresh_last_activity()
        return result, _result_status_code(result)

    @app.post("/rerun/latest")
    def rerun_latest_post() -> tuple[dict, int]:
        result = ingestor.poll(force_update=True)
        return {"status": "ok" if result.get("status") != "error" else "error", "result": result}, _result_status_code(result)

    @app.post("/rerun/activity/<int:activity_id>")
    def rerun_activity_post(activity_id: int) -> tuple[dict, int]:
        result = ingestor.ingest(activity_id)
        return {"status": "ok" if result.get("status") != "error" else "error", "result": result}, _result_status_code(result)

    @app.post("/push/latest")
    def push_latest_post() -> tuple[dict, int]:
        result = ingestor.push_description()
        return result, _result_status_code(result)

    @app.get("/webhook")
    def webhook_verify() -> tuple[dict, int]:
        config = repository.load_webhook_config()
        return handshake(request.args, config.verify_token)

    @app.post("/webhook")
    def webhook_event() -> tuple[dict, int]:
        raw_body = request.get_data(cache=True)
        signature = request.headers.get(SIGNATURE_HEADER)
        if signature is not None:
            config = repository.load_webhook_config()
            if not verify_signature(signature, raw_body, config.secret):
                logger.error("Webhook signature verification failed.")
                return {"status": "error", "error": "signature verification failed"}, 401

        event = request.get_json(silent=True) or {}
        logger.info(
            "Webhook received: %s %s %s",
            event.get("object_type"),
            event.get("aspect_type"),
            event.get("object_id"),
        )
        queued = False
        if should_ingest(event):
            try:
                activity_id = int(event.get("object_id"))
            except (TypeError, ValueError):
                logger.warning("Ignoring webhook event with object_id=%r.", event.get("object_id"))
            else:
                dispatcher.submit(activity_id)
                queued = True
        return {"status": "ok", "queued": queued}, 200

    @app.get("/setup-webhook")
    def setup_webhook_list() -> tuple[dict, int]:
        try:
            subscriptions = strava_client.list_push_subscriptions()
        except RunstreakError as exc:
            return {"status": "error", "error": str(exc)}, 502
        return {"status": "ok", "subscriptions": subscriptions}, 200

    @app.post("/setup-webhook")
    def setup_webhook_create() -> tuple[dict, int]:
        config = repository.load_webhook_config()
        if not config.verify_token:
            config = WebhookConfig(verify_token=secrets.token_urlsafe(16), secret=config.secret)
            repository.save_webhook_config(config)
        callback_url = settings.webhook_callback_url
        try:
            subscription = strava_client.create_push_subscription(callback_url, config.verify_token)
        except RunstreakError as exc:
            logger.warning("Webhook subscription create failed: %s", exc)
            try:
                existing = strava_client.list_push_subscriptions()
            except RunstreakError:
                existing = []
            return {"status": "error", "error": str(exc), "subscriptions": existing}, 409
        logger.info("Webhook subscription created for %s.", callback_url)
        return {"status": "ok", "subscription": subscription, "callback_url": callback_url}, 200

    @app.delete("/setup-webhook/<int:subscription_id>")
    def setup_webhook_delete(subscription_id: int) -> tuple[dict, int]:
        try:
            strava_client.delete_push_subscription(subscription_id)
        except RunstreakError as exc:
            return {"status": "error", "error": str(exc)}, 502
        return {"status": "ok", "deleted": subscription_id}, 200

    @app.get("/auth/strava")
    def auth_start():
        state = secrets.token_urlsafe(24)
        store.set(OAUTH_STATE_KEY, state)
        return redirect(strava_client.authorization_url(settings.oauth_redirect_uri, state=state), code=302)

    @app.get("/auth/callback")
    def auth_callback() -> tuple[dict, int]:
        error = request.args.get("error")
        if error:
            return {"status": "error", "error": error}, 400
        expected_state = store.get(OAUTH_STATE_KEY)
        if expected_state and request.args.get("state") != expected_state:
            return {"status": "error", "error": "state mismatch"}, 400
        code = request.args.get("code")
        if not code:
            return {"status": "error", "error": "missing code"}, 400
        try:
            tokens = strava_client.exchange_code(code)
        except RunstreakError as exc:
            return {"status": "error", "error": str(exc)}, 502
        store.delete(OAUTH_STATE_KEY)
        athlete = tokens.athlete or {}
        return {
            "status": "ok",
            "athlete": {
                "id": athlete.get("id"),
                "firstname": athlete.get("firstname"),
                "lastname": athlete.get("lastname"),
            },
        }, 200

    @app.post("/auth/disconnect")
    def auth_disconnect() -> tuple[dict, int]:
        strava_client.clear_tokens()
        return {"status": "ok"}, 200

    return app


def main() -> None:
    settings = Settings.from_env()
    _configure_logging(settings.log_level)
    app = create_app(settings)
    app.run(host="0.0.0.0", port=settings.api_port)


if __name__ == "__main__":
    main()
