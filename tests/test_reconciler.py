import unittest
from datetime import datetime, timedelta, timezone

from wellsync.models import CalendarDescriptor, EventRecord
from wellsync.reconciler import deduplicate, in_scope_calendars, is_in_scope, merge_events


def _event(title: str, start: datetime, **kwargs) -> EventRecord:
    return EventRecord(title=title, start=start, end=start + timedelta(hours=1), **kwargs)


class ReconcilerTests(unittest.TestCase):
    def test_scope_excludes_birthdays_and_read_only_calendars(self) -> None:
        calendars = [
            CalendarDescriptor(id="personal", display_name="Personal", source_name="dav.example.com"),
            CalendarDescriptor(id="contacts", display_name="Contacts", source_name="Birthdays"),
            CalendarDescriptor(id="family", display_name="Family Birthday List", source_name="dav.example.com"),
            CalendarDescriptor(id="holidays", display_name="Holidays", is_writable=False),
        ]

        self.assertEqual([calendar.id for calendar in in_scope_calendars(calendars)], ["personal"])
        self.assertFalse(is_in_scope(CalendarDescriptor(id="x", display_name="BIRTHDAYS")))

    def test_deduplicate_keeps_first_occurrence(self) -> None:
        start = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
        local = _event("Morning Run", start, id="local-1")
        remote = _event("Morning Run", start.replace(microsecond=250000), id="remote-1", provider="remote")

        self.assertEqual([event.id for event in deduplicate([local, remote])], ["local-1"])

    def test_deduplicate_distinguishes_title_and_second(self) -> None:
        start = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
        events = [
            _event("Morning Run", start, id="a"),
            _event("Morning run", start, id="b"),
            _event("Morning Run", start + timedelta(seconds=1), id="c"),
        ]

        self.assertEqual([event.id for event in deduplicate(events)], ["a", "b", "c"])

    def test_dedup_compares_instants_across_timezones(self) -> None:
        start = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
        shifted = start.astimezone(timezone(timedelta(hours=2)))

        merged = deduplicate([_event("Yoga", start, id="a"), _event("Yoga", shifted, id="b")])

        self.assertEqual([event.id for event in merged], ["a"])

    def test_merge_classifies_and_prefers_local(self) -> None:
        start = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
        merged = merge_events(
            [_event("Morning Run", start, id="local-1")],
            [
                _event("Morning Run", start, id="remote-1", provider="remote"),
                _event(
                    "Doctor visit",
                    start + timedelta(days=1),
                    id="remote-2",
                    provider="remote",
                    description="x\n[MANAGED] - Created by WellSync",
                ),
            ],
        )

        self.assertEqual([event.id for event in merged], ["local-1", "remote-2"])
        self.assertEqual(merged[0].category, "fitness")
        self.assertFalse(merged[0].is_managed)
        self.assertEqual(merged[1].category, "medical")
        self.assertTrue(merged[1].is_managed)

    def test_merge_of_empty_inputs(self) -> None:
        self.assertEqual(merge_events([], []), [])


if __name__ == "__main__":
    unittest.main()
