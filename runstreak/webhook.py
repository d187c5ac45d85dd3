from __future__ import annotations

import concurrent.futures
import hashlib
import hmac
import logging
from typing import Any, Callable, Mapping

from .state import StateRepository


logger = logging.getLogger(__name__)
task_logger = logging.getLogger("runstreak.webhook.tasks")

SIGNATURE_HEADER = "X-Hub-Signature"


def expected_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()
    return f"sha1={digest}"


def verify_signature(signature: str | None, raw_body: bytes, secret: str | None) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature.strip(), expected_signature(raw_body, secret))


def handshake(params: Mapping[str, str], verify_token: str) -> tuple[dict[str, Any], int]:
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")
    if not mode or not token:
        return {"status": "error", "error": "missing hub.mode or hub.verify_token"}, 400
    if mode == "subscribe" and verify_token and hmac.compare_digest(token, verify_token):
        logger.info("Webhook subscription verified.")
        return {"hub.challenge": challenge}, 200
    logger.warning("Webhook verification failed for mode=%s.", mode)
    return {"status": "error", "error": "verification failed"}, 403


def should_ingest(event: Mapping[str, Any]) -> bool:
    return event.get("object_type") == "activity" and event.get("aspect_type") == "create"


class WebhookDispatcher:
    """Runs webhook ingestions in the background, one at a time.

    Failures never reach the HTTP response; they go to the
    ``runstreak.webhook.tasks`` logger and the ``webhook.*`` status keys.
    """

    def __init__(self, repository: StateRepository, ingest: Callable[[int], dict[str, Any]]):
        self.repository = repository
        self.ingest = ingest
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="webhook-ingest")

    def submit(self, activity_id: int) -> concurrent.futures.Future:
        future = self.executor.submit(self.ingest, activity_id)
        future.add_done_callback(lambda done: self._on_done(activity_id, done))
        return future

    def _on_done(self, activity_id: int, future: concurrent.futures.Future) -> None:
        exc = future.exception()
        if exc is not None:
            task_logger.error("Webhook ingestion of activity %s crashed: %s", activity_id, exc, exc_info=exc)
            self.repository.record_status("webhook", status="crashed", error=str(exc), last_activity_id=activity_id)
            return
        result = future.result() or {}
        status = str(result.get("status") or "unknown")
        if status == "error":
            task_logger.error(
                "Webhook ingestion of activity %s failed at stage '%s': %s",
                activity_id,
                result.get("stage"),
                result.get("error"),
            )
            self.repository.record_status(
                "webhook",
                status=status,
                error=f"{result.get('stage')}: {result.get('error')}",
                last_activity_id=activity_id,
            )
            return
        task_logger.info("Webhook ingestion of activity %s finished: %s", activity_id, status)
        self.repository.record_status("webhook", status=status, last_activity_id=activity_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
