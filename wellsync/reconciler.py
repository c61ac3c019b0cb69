from __future__ import annotations

from datetime import datetime
from typing import Iterable

from wellsync.caldav_client import BIRTHDAYS_SOURCE
from wellsync.classifier import classify_event
from wellsync.models import CalendarDescriptor, EventRecord


def is_in_scope(calendar: CalendarDescriptor) -> bool:
    # Birthday calendars are generated from contacts and are noise for sync.
    if not calendar.is_writable:
        return False
    if calendar.source_name == BIRTHDAYS_SOURCE:
        return False
    return "birthday" not in (calendar.display_name or "").casefold()


def in_scope_calendars(calendars: Iterable[CalendarDescriptor]) -> list[CalendarDescriptor]:
    return [calendar for calendar in calendars if is_in_scope(calendar)]


def classify_events(events: Iterable[EventRecord]) -> list[EventRecord]:
    return [classify_event(event) for event in events]


def deduplicate(events: Iterable[EventRecord]) -> list[EventRecord]:
    """Keep the first event for each (title, start-to-the-second) pair.

    Callers pass local events before remote ones so the device calendar wins.
    """
    seen: set[tuple[str, datetime]] = set()
    unique: list[EventRecord] = []
    for event in events:
        key = event.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


def merge_events(local_events: Iterable[EventRecord], remote_events: Iterable[EventRecord]) -> list[EventRecord]:
    return deduplicate([*classify_events(local_events), *classify_events(remote_events)])
