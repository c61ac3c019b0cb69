import tempfile
import unittest
from pathlib import Path

from wellsync.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "data" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_sync_runs_newest_first(self) -> None:
        self.store.record_sync_run(
            trigger="enable", status="fatal", message="no writable calendars found",
            duration_ms=12, event_count=0, error_count=0,
        )
        self.store.record_sync_run(
            trigger="manual", status="success", message="Synced 2 events",
            duration_ms=40, event_count=2, error_count=1,
        )

        runs = self.store.recent_sync_runs(limit=10)

        self.assertEqual([run["status"] for run in runs], ["success", "fatal"])
        self.assertEqual(runs[0]["event_count"], 2)
        self.assertEqual(runs[0]["error_count"], 1)
        self.assertEqual(len(self.store.recent_sync_runs(limit=1)), 1)

    def test_audit_events_decode_details(self) -> None:
        self.store.record_audit_event(
            calendar_id="cal-1",
            event_id="https://dav.example.com/cal-1/e.ics",
            action="create_managed_event",
            details={"title": "Yoga"},
        )

        events = self.store.recent_audit_events()

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["action"], "create_managed_event")
        self.assertEqual(events[0]["details"], {"title": "Yoga"})
        self.assertNotIn("details_json", events[0])

    def test_meta_upsert(self) -> None:
        self.assertIsNone(self.store.get_meta("sync_enabled"))
        self.store.set_meta("sync_enabled", "1")
        self.store.set_meta("sync_enabled", "0")
        self.assertEqual(self.store.get_meta("sync_enabled"), "0")


if __name__ == "__main__":
    unittest.main()
