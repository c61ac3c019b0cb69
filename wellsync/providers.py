from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from wellsync.models import (
    AuthorizationRequest,
    CalendarDescriptor,
    EventPatch,
    EventRecord,
    OAuthSession,
)


class LocalCalendarProvider(Protocol):
    """Calendar store owned by the user (the CalDAV server in production)."""

    def request_permission(self) -> bool:
        ...

    def list_calendars(self) -> list[CalendarDescriptor]:
        ...

    def list_events(
        self, calendar_ids: Sequence[str], start: datetime, end: datetime
    ) -> list[EventRecord]:
        ...

    def get_event(self, event_id: str) -> EventRecord:
        ...

    def create_event(self, calendar_id: str, event: EventRecord) -> str:
        ...

    def update_event(self, event_id: str, patch: EventPatch) -> None:
        ...

    def delete_event(self, event_id: str) -> None:
        ...


class RemoteCalendarProvider(Protocol):
    """OAuth2-authenticated cloud calendar."""

    def begin_authorization(self) -> AuthorizationRequest:
        ...

    def exchange_code(self, code: str, state: str) -> OAuthSession:
        ...

    def list_events(self, session: OAuthSession, start: datetime, end: datetime) -> list[EventRecord]:
        ...

    def create_event(self, session: OAuthSession, event: EventRecord) -> str:
        ...

    def cancel_authorization(self) -> None:
        ...
