from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import requests

from .config import Settings
from .errors import AuthExpiredError, TransientExternalError
from .models import StravaTokens
from .storage import StateStore


logger = logging.getLogger(__name__)

BASE_URL = "https://www.strava.com"
API_URL = f"{BASE_URL}/api/v3"
TOKEN_URL = f"{BASE_URL}/oauth/token"
AUTHORIZE_URL = f"{BASE_URL}/oauth/authorize"
OAUTH_SCOPE = "read,activity:read_all,activity:write"
TIMEOUT_SECONDS = 30
MAX_ACTIVITY_PAGES = 60
TOKENS_KEY = "strava_tokens"

_REFRESH_GUARD = threading.Lock()


class StravaClient:
    def __init__(self, settings: Settings, store: StateStore, *, session: requests.Session | None = None):
        self.client_id = settings.strava_client_id
        self.client_secret = settings.strava_client_secret
        self.store = store
        self.session = session or requests.Session()
        self._seed_tokens(settings)

    def _seed_tokens(self, settings: Settings) -> None:
        if self.store.exists(TOKENS_KEY):
            return
        if not settings.strava_refresh_token and not settings.strava_access_token:
            return
        self._save_tokens(
            StravaTokens(
                access_token=settings.strava_access_token,
                refresh_token=settings.strava_refresh_token or None,
            )
        )

    def load_tokens(self) -> StravaTokens:
        return StravaTokens.from_dict(self.store.get(TOKENS_KEY))

    def _save_tokens(self, tokens: StravaTokens) -> None:
        self.store.set(TOKENS_KEY, tokens.to_dict())

    def clear_tokens(self) -> None:
        self.store.delete(TOKENS_KEY)

    def is_authenticated(self) -> bool:
        tokens = self.load_tokens()
        return bool(tokens.access_token or tokens.refresh_token)

    def authorization_url(self, redirect_uri: str, *, state: str | None = None) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "approval_prompt": "force",
            "scope": OAUTH_SCOPE,
        }
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _post_token(self, data: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.post(TOKEN_URL, data=data, timeout=TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise TransientExternalError(f"Strava token endpoint unreachable: {exc}") from exc
        if response.status_code in {400, 401, 403}:
            raise AuthExpiredError(
                f"Strava rejected the {data.get('grant_type')} request ({response.status_code}). "
                "Please re-authenticate at /auth/strava."
            )
        if response.status_code >= 400:
            raise TransientExternalError(
                f"Strava token endpoint returned {response.status_code}.",
                status_code=response.status_code,
            )
        payload = response.json()
        if not payload.get("access_token"):
            raise TransientExternalError("Strava token response did not include an access_token.")
        return payload

    def exchange_code(self, code: str) -> StravaTokens:
        payload = self._post_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
            }
        )
        tokens = StravaTokens.from_dict(payload)
        self._save_tokens(tokens)
        logger.info("Strava authorization completed for athlete %s.", tokens.athlete.get("id"))
        return tokens

    def refresh_access_token(self, stale_token: str | None = None) -> str:
        """Refresh the access token once, however many callers ask at the same time.

        A caller passes the token that just failed. If another thread already
        replaced it, that fresh token is returned without a second refresh.
        """
        with _REFRESH_GUARD:
            tokens = self.load_tokens()
            if stale_token is not None and tokens.access_token and tokens.access_token != stale_token:
                return tokens.access_token
            if not tokens.refresh_token:
                raise AuthExpiredError("No Strava refresh token stored. Please authenticate at /auth/strava.")
            payload = self._post_token(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": tokens.refresh_token,
                    "grant_type": "refresh_token",
                }
            )
            refreshed = StravaTokens.from_dict(payload)
            self._save_tokens(
                StravaTokens(
                    access_token=refreshed.access_token,
                    refresh_token=refreshed.refresh_token or tokens.refresh_token,
                    expires_at=refreshed.expires_at,
                    athlete=tokens.athlete,
                )
            )
            logger.info("Strava access token refreshed.")
            return str(refreshed.access_token)

    def _access_token(self) -> str:
        tokens = self.load_tokens()
        if not tokens.access_token or tokens.is_expired(time.time()):
            return self.refresh_access_token(stale_token=tokens.access_token)
        return tokens.access_token

    def _send(self, method: str, url: str, token: str | None, **kwargs: Any) -> requests.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            return self.session.request(method, url, headers=headers, timeout=TIMEOUT_SECONDS, **kwargs)
        except requests.RequestException as exc:
            raise TransientExternalError(f"Strava {method} {url} failed: {exc}") from exc

    @staticmethod
    def _check(response: requests.Response, method: str, path: str) -> requests.Response:
        if response.status_code == 401:
            raise AuthExpiredError(f"Strava rejected credentials for {method} {path}. Please re-authenticate at /auth/strava.")
        if response.status_code >= 400:
            raise TransientExternalError(
                f"Strava {method} {path} returned {response.status_code}.",
                status_code=response.status_code,
            )
        return response

    def _request(
        self, method: str, path: str, *, params: dict[str, Any] | None = None, data: dict[str, Any] | None = None
    ) -> requests.Response:
        token = self._access_token()
        response = self._send(method, f"{API_URL}{path}", token, params=params, data=data)
        if response.status_code == 401:
            token = self.refresh_access_token(stale_token=token)
            response = self._send(method, f"{API_URL}{path}", token, params=params, data=data)
        return self._check(response, method, path)

    def get_activity(self, activity_id: int) -> dict[str, Any]:
        response = self._request("GET", f"/activities/{activity_id}")
        return response.json()

    def get_recent_activities(self, per_page: int = 1) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            "/athlete/activities",
            params={"per_page": per_page, "page": 1},
        )
        return response.json()

    def get_activities_after(self, after_dt: datetime, per_page: int = 200) -> list[dict[str, Any]]:
        activities: list[dict[str, Any]] = []
        page = 1
        while page <= MAX_ACTIVITY_PAGES:
            response = self._request(
                "GET",
                "/athlete/activities",
                params={
                    "per_page": per_page,
                    "page": page,
                    "after": int(after_dt.timestamp()),
                },
            )
            page_items = response.json()
            if not page_items:
                break
            activities.extend(page_items)
            if len(page_items) < per_page:
                break
            page += 1
        else:
            logger.warning(
                "Strava activities pagination hit cap (%s pages, per_page=%s). Results may be truncated.",
                MAX_ACTIVITY_PAGES,
                per_page,
            )
        return activities

    def update_activity_description(self, activity_id: int, description: str) -> dict[str, Any]:
        response = self._request("PUT", f"/activities/{activity_id}", data={"description": description})
        return response.json()

    def _app_credentials(self) -> dict[str, str]:
        return {"client_id": self.client_id, "client_secret": self.client_secret}

    def create_push_subscription(self, callback_url: str, verify_token: str) -> dict[str, Any]:
        response = self._send(
            "POST",
            f"{API_URL}/push_subscriptions",
            None,
            data={**self._app_credentials(), "callback_url": callback_url, "verify_token": verify_token},
        )
        return self._check(response, "POST", "/push_subscriptions").json()

    def list_push_subscriptions(self) -> list[dict[str, Any]]:
        response = self._send("GET", f"{API_URL}/push_subscriptions", None, params=self._app_credentials())
        return self._check(response, "GET", "/push_subscriptions").json()

    def delete_push_subscription(self, subscription_id: int) -> None:
        response = self._send(
            "DELETE",
            f"{API_URL}/push_subscriptions/{subscription_id}",
            None,
            params=self._app_credentials(),
        )
        self._check(response, "DELETE", f"/push_subscriptions/{subscription_id}")
