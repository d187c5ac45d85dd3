from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from .activity_pipeline import ActivityIngestor, _configure_logging, build_ingestor
from .config import Settings


logger = logging.getLogger(__name__)


def _cycle_failed(result: object) -> bool:
    if not isinstance(result, dict):
        return True
    return str(result.get("status") or "").strip().lower() == "error"


def run_cycle(ingestor: ActivityIngestor) -> dict:
    store = ingestor.store
    now_utc = datetime.now(timezone.utc)
    store.set_many({"worker.heartbeat_utc": now_utc.isoformat(), "worker.state": "running_cycle"})
    try:
        result = ingestor.poll(force_update=False)
    except Exception as exc:
        logger.exception("Worker cycle crashed.")
        result = {"status": "error", "stage": "poll", "error": str(exc)}
    store.set_many({"worker.last_cycle_result": result, "worker.state": "sleeping"})
    if _cycle_failed(result):
        logger.warning("Worker cycle finished with errors: %s", result)
    else:
        logger.info("Worker cycle finished: %s", result.get("status"))
    return result


def main() -> None:
    settings = Settings.from_env()
    settings.ensure_state_paths()
    _configure_logging(settings.log_level)
    settings.validate()

    interval = settings.poll_interval_seconds
    ingestor = build_ingestor(settings)
    logger.info("Worker started with poll interval: %ss", interval)
    ingestor.store.set("worker.started_at_utc", datetime.now(timezone.utc).isoformat())

    while True:
        run_cycle(ingestor)
        time.sleep(interval)


if __name__ == "__main__":
    main()
