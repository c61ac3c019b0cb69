from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Sequence
from urllib.parse import urlparse

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from wellsync.models import (
    DEFAULT_TITLE,
    PROVIDER_LOCAL,
    CalDAVConfig,
    CalendarDescriptor,
    EventPatch,
    EventRecord,
    date_to_datetime,
    normalize_event_times,
)


logger = logging.getLogger(__name__)

BIRTHDAYS_SOURCE = "Birthdays"
_BIRTHDAY_PATH_SEGMENTS = {"contact_birthdays", "birthdays", "birthday"}


def _normalize_calendar_id(value: Any) -> str:
    return str(value or "").strip().rstrip("/")


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _decoded(vevent: ICEvent, key: str) -> Any:
    if vevent.get(key) is None:
        return None
    return vevent.decoded(key)


def _replace_property(vevent: ICEvent, key: str, value: Any) -> None:
    if key in vevent:
        del vevent[key]
    if value is not None and value != "":
        vevent.add(key, value)


def _source_name_for(calendar_url: str, configured: str) -> str:
    path_segments = [segment.lower() for segment in urlparse(calendar_url).path.split("/") if segment]
    if path_segments and path_segments[-1] in _BIRTHDAY_PATH_SEGMENTS:
        return BIRTHDAYS_SOURCE
    if configured:
        return configured
    return urlparse(calendar_url).hostname or ""


class CalDAVCalendarProvider:
    """Local calendar store backed by a user-owned CalDAV server."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_configured():
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def request_permission(self) -> bool:
        try:
            self._connect()
        except caldav_error.AuthorizationError:
            logger.info("CalDAV server rejected credentials for %s", self.config.username)
            self._principal = None
            return False
        return True

    def _is_writable(self, calendar: Any, calendar_id: str) -> bool:
        read_only = {_normalize_calendar_id(x) for x in self.config.read_only_calendar_ids}
        if calendar_id in read_only:
            return False
        try:
            components = calendar.get_supported_components()
        except Exception as exc:
            # Servers that do not report the component set accept events.
            logger.debug("Supported components unavailable for %s: %s", calendar_id, exc)
            return True
        if not components:
            return True
        return "VEVENT" in {str(item).upper() for item in components}

    def list_calendars(self) -> list[CalendarDescriptor]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarDescriptor] = []
        for calendar in self._principal.calendars():
            calendar_id = _normalize_calendar_id(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(
                CalendarDescriptor(
                    id=calendar_id,
                    display_name=str(name),
                    source_name=_source_name_for(calendar_id, self.config.source_name),
                    is_writable=self._is_writable(calendar, calendar_id),
                )
            )
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        calendar_id = _normalize_calendar_id(calendar_id)
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        for calendar in self._principal.calendars():
            self._calendar_cache[_normalize_calendar_id(calendar.url)] = calendar
        if calendar_id not in self._calendar_cache:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def _calendar_for_event(self, event_id: str) -> tuple[str, Any]:
        href = str(event_id or "").strip()
        if not href:
            raise ValueError("event id is required")
        if not self._calendar_cache:
            self.list_calendars()
        for _ in range(2):
            # Longest prefix first so nested collections resolve to the innermost calendar.
            for calendar_id in sorted(self._calendar_cache, key=len, reverse=True):
                if href.startswith(calendar_id + "/"):
                    return calendar_id, self._calendar_cache[calendar_id]
            self.list_calendars()
        raise RuntimeError(f"No calendar owns event: {href}")

    def list_events(
        self, calendar_ids: Sequence[str], start: datetime, end: datetime
    ) -> list[EventRecord]:
        self._connect()
        events: list[EventRecord] = []
        for calendar_id in calendar_ids:
            calendar = self._get_calendar(calendar_id)
            # Recurring series come back as one resource per occurrence in the window.
            resources = calendar.search(start=start, end=end, event=True, expand=True)
            for item in resources:
                event = self._parse_resource(_normalize_calendar_id(calendar_id), item)
                if event is not None:
                    events.append(event)
        return events

    def _parse_resource(self, calendar_id: str, resource: Any) -> EventRecord | None:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            logger.debug("Skipping resource without VEVENT in %s", calendar_id)
            return None

        dtstart_raw = _decoded(vevent, "DTSTART")
        start = _coerce_datetime(dtstart_raw)
        if start is None:
            return None
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        end = _coerce_datetime(_decoded(vevent, "DTEND"))
        start, end = normalize_event_times(start, end, all_day)
        last_modified = _coerce_datetime(_decoded(vevent, "LAST-MODIFIED") or _decoded(vevent, "DTSTAMP"))
        return EventRecord(
            id=str(getattr(resource, "url", "") or ""),
            title=str(vevent.get("SUMMARY", "")).strip() or DEFAULT_TITLE,
            description=str(vevent.get("DESCRIPTION", "")),
            location=str(vevent.get("LOCATION", "")).strip(),
            start=start,
            end=end,
            all_day=all_day,
            origin_calendar_id=calendar_id,
            provider=PROVIDER_LOCAL,
            last_modified=last_modified,
        )

    def get_event(self, event_id: str) -> EventRecord:
        self._connect()
        calendar_id, calendar = self._calendar_for_event(event_id)
        event = self._parse_resource(calendar_id, calendar.event_by_url(event_id))
        if event is None:
            raise RuntimeError(f"VEVENT missing in calendar resource: {event_id}")
        return event

    def _build_ical(self, event: EventRecord, uid: str) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//WellSync//Calendar Sync//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("SUMMARY", event.title or DEFAULT_TITLE)
        vevent.add("DESCRIPTION", event.description or "")
        if event.location:
            vevent.add("LOCATION", event.location)
        if event.all_day:
            vevent.add("DTSTART", event.start.date())
            end_date = event.end.date()
            if end_date <= event.start.date():
                end_date = event.start.date() + timedelta(days=1)
            vevent.add("DTEND", end_date)
        else:
            vevent.add("DTSTART", event.start)
            vevent.add("DTEND", event.end)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def create_event(self, calendar_id: str, event: EventRecord) -> str:
        self._connect()
        calendar = self._get_calendar(calendar_id)
        raw_ical = self._build_ical(event, uid=str(uuid.uuid4()))
        resource = calendar.save_event(raw_ical)
        return str(resource.url)

    def update_event(self, event_id: str, patch: EventPatch) -> None:
        self._connect()
        _, calendar = self._calendar_for_event(event_id)
        resource = calendar.event_by_url(event_id)
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise RuntimeError(f"VEVENT missing in calendar resource: {event_id}")

        if patch.title is not None:
            _replace_property(vevent, "SUMMARY", patch.title or DEFAULT_TITLE)
        if patch.description is not None:
            _replace_property(vevent, "DESCRIPTION", patch.description)
        if patch.location is not None:
            _replace_property(vevent, "LOCATION", patch.location)
        current_start = _decoded(vevent, "DTSTART")
        all_day = patch.all_day
        if all_day is None:
            all_day = isinstance(current_start, date) and not isinstance(current_start, datetime)
        if patch.start is not None:
            _replace_property(vevent, "DTSTART", patch.start.date() if all_day else patch.start)
        if patch.end is not None:
            _replace_property(vevent, "DTEND", patch.end.date() if all_day else patch.end)
        _replace_property(vevent, "LAST-MODIFIED", datetime.now(timezone.utc))

        resource.data = calendar_obj.to_ical().decode("utf-8")
        resource.save()

    def delete_event(self, event_id: str) -> None:
        self._connect()
        _, calendar = self._calendar_for_event(event_id)
        calendar.event_by_url(event_id).delete()
