from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import requests
from google_auth_oauthlib.flow import Flow

from wellsync.models import (
    DEFAULT_TITLE,
    PROVIDER_REMOTE,
    AuthorizationRequest,
    EventRecord,
    OAuthSession,
    RemoteConfig,
    date_to_datetime,
    normalize_event_times,
    parse_iso_datetime,
    rfc3339,
)


logger = logging.getLogger(__name__)


class RemoteCalendarError(RuntimeError):
    pass


class RemoteAuthorizationError(RemoteCalendarError):
    """The remote calendar rejected the session (expired or revoked token)."""


class AuthorizationError(RemoteCalendarError):
    """The authorization callback could not be verified."""


class TokenExchangeError(RemoteCalendarError):
    pass


def _parse_event_time(payload: Any) -> tuple[datetime | None, bool]:
    if not isinstance(payload, dict):
        return None, False
    if payload.get("dateTime"):
        return parse_iso_datetime(str(payload["dateTime"])), False
    if payload.get("date"):
        day = datetime.strptime(str(payload["date"]), "%Y-%m-%d").date()
        return date_to_datetime(day), True
    return None, False


def event_from_api(item: dict[str, Any], calendar_id: str) -> EventRecord | None:
    start, all_day = _parse_event_time(item.get("start"))
    if start is None:
        return None
    end, _ = _parse_event_time(item.get("end"))
    start, end = normalize_event_times(start, end, all_day)
    updated = item.get("updated")
    return EventRecord(
        id=str(item.get("id", "") or ""),
        title=str(item.get("summary", "") or "").strip() or DEFAULT_TITLE,
        description=str(item.get("description", "") or ""),
        location=str(item.get("location", "") or "").strip(),
        start=start,
        end=end,
        all_day=all_day,
        origin_calendar_id=calendar_id,
        provider=PROVIDER_REMOTE,
        last_modified=parse_iso_datetime(str(updated)) if updated else None,
    )


def event_to_api(event: EventRecord) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": event.title or DEFAULT_TITLE,
        "description": event.description or "",
    }
    if event.location:
        body["location"] = event.location
    if event.all_day:
        body["start"] = {"date": event.start.date().isoformat()}
        body["end"] = {"date": event.end.date().isoformat()}
    else:
        body["start"] = {"dateTime": event.start.isoformat()}
        body["end"] = {"dateTime": event.end.isoformat()}
    return body


class GoogleCalendarProvider:
    """Cloud calendar reached through OAuth2 and the calendar REST API."""

    def __init__(self, config: RemoteConfig) -> None:
        self.config = config
        # Only the most recent authorization can complete; starting another replaces it.
        self._pending: tuple[str, Flow] | None = None
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return self.config.is_configured()

    def _client_config(self) -> dict[str, Any]:
        return {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": self.config.auth_uri,
                "token_uri": self.config.token_uri,
                "redirect_uris": [self.config.redirect_uri],
            }
        }

    def _flow(self, state: str | None = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=list(self.config.scopes),
            redirect_uri=self.config.redirect_uri,
            state=state,
        )

    def _events_endpoint(self) -> str:
        base = self.config.api_base_url.rstrip("/")
        return f"{base}/calendars/{quote(self.config.calendar_id, safe='')}/events"

    def begin_authorization(self) -> AuthorizationRequest:
        if not self.is_configured():
            raise RuntimeError("Remote calendar config is incomplete: client_id/redirect_uri required.")
        flow = self._flow()
        url, state = flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
        )
        with self._lock:
            self._pending = (state, flow)
        return AuthorizationRequest(url=url, state=state)

    def exchange_code(self, code: str, state: str) -> OAuthSession:
        with self._lock:
            pending, self._pending = self._pending, None
        if pending is None or pending[0] != state:
            raise AuthorizationError("No pending authorization for the returned state.")
        flow = pending[1]
        try:
            flow.fetch_token(code=code)
        except Exception as exc:
            raise TokenExchangeError(f"{type(exc).__name__}: {exc}") from exc
        credentials = flow.credentials
        if not getattr(credentials, "token", None):
            raise TokenExchangeError("Token endpoint returned no access token.")
        expiry = getattr(credentials, "expiry", None)
        if expiry is not None and expiry.tzinfo is None:
            # google-auth reports expiry as naive UTC.
            expiry = expiry.replace(tzinfo=timezone.utc)
        return OAuthSession(
            access_token=str(credentials.token),
            expires_at=expiry,
            scopes=tuple(getattr(credentials, "scopes", None) or self.config.scopes),
        )

    def cancel_authorization(self) -> None:
        with self._lock:
            self._pending = None

    @property
    def has_pending_authorization(self) -> bool:
        return self._pending is not None

    def _headers(self, session: OAuthSession) -> dict[str, str]:
        return {
            "Authorization": session.authorization_header(),
            "Accept": "application/json",
        }

    def _check_response(self, response: requests.Response) -> None:
        if response.status_code in (401, 403):
            raise RemoteAuthorizationError(
                f"HTTP {response.status_code}: remote calendar rejected the access token"
            )
        if not response.ok:
            raise RemoteCalendarError(f"HTTP {response.status_code}: {response.text[:300]}")

    def list_events(self, session: OAuthSession, start: datetime, end: datetime) -> list[EventRecord]:
        params: dict[str, Any] = {
            "timeMin": rfc3339(start),
            "timeMax": rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.config.page_size,
        }
        events: list[EventRecord] = []
        seen_tokens: set[str] = set()
        while True:
            response = requests.get(
                self._events_endpoint(),
                headers=self._headers(session),
                params=params,
                timeout=self.config.timeout_seconds,
            )
            self._check_response(response)
            payload = response.json()
            for item in payload.get("items", []) or []:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                event = event_from_api(item, self.config.calendar_id)
                if event is not None:
                    events.append(event)
            next_token = str(payload.get("nextPageToken", "") or "")
            if not next_token or next_token in seen_tokens:
                break
            seen_tokens.add(next_token)
            params["pageToken"] = next_token
        logger.debug("Fetched %d remote events from %s", len(events), self.config.calendar_id)
        return events

    def create_event(self, session: OAuthSession, event: EventRecord) -> str:
        response = requests.post(
            self._events_endpoint(),
            headers={**self._headers(session), "Content-Type": "application/json"},
            json=event_to_api(event),
            timeout=self.config.timeout_seconds,
        )
        self._check_response(response)
        return str(response.json().get("id", ""))
