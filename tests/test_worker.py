import unittest
from types import SimpleNamespace

from runstreak.storage import MemoryBackend, StateStore
from runstreak.worker import _cycle_failed, run_cycle


class TestWorkerCycle(unittest.TestCase):
    def test_cycle_failed_detection(self) -> None:
        self.assertTrue(_cycle_failed({"status": "error"}))
        self.assertTrue(_cycle_failed({"status": "ERROR"}))
        self.assertTrue(_cycle_failed(None))
        self.assertFalse(_cycle_failed({"status": "polled"}))
        self.assertFalse(_cycle_failed({"status": "no_activities"}))

    def test_run_cycle_records_result(self) -> None:
        store = StateStore(MemoryBackend())
        ingestor = SimpleNamespace(store=store, poll=lambda force_update=False: {"status": "no_activities"})
        result = run_cycle(ingestor)
        self.assertEqual(result, {"status": "no_activities"})
        self.assertEqual(store.get("worker.last_cycle_result"), {"status": "no_activities"})
        self.assertEqual(store.get("worker.state"), "sleeping")
        self.assertIsNotNone(store.get("worker.heartbeat_utc"))

    def test_run_cycle_survives_crash(self) -> None:
        def explode(force_update=False):
            raise RuntimeError("poll blew up")

        store = StateStore(MemoryBackend())
        with self.assertLogs("runstreak.worker", level="ERROR"):
            result = run_cycle(SimpleNamespace(store=store, poll=explode))
        self.assertEqual(result["status"], "error")
        self.assertIn("poll blew up", store.get("worker.last_cycle_result")["error"])


if __name__ == "__main__":
    unittest.main()
