from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


CATEGORIES = ("fitness", "mental", "nutrition", "medical", "personal", "work")
DEFAULT_TITLE = "Untitled Event"
PERMISSION_PLATFORMS = ("ios", "android")
PROVIDER_LOCAL = "local"
PROVIDER_REMOTE = "remote"

DEFAULT_REMOTE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
DEFAULT_REMOTE_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_REMOTE_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_REMOTE_SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def rfc3339(value: datetime) -> str:
    return _ensure_tz(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    # All-day end dates are exclusive, so both bounds map to midnight UTC.
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def normalize_event_times(
    start: datetime | None, end: datetime | None, all_day: bool
) -> tuple[datetime | None, datetime | None]:
    if start is None:
        return None, end
    start = _ensure_tz(start)
    if end is None:
        return start, start + timedelta(hours=1)
    end = _ensure_tz(end)
    if end <= start and not all_day:
        return start, start + timedelta(hours=1)
    return start, end


@dataclass
class AppSettings:
    name: str = "WellSync"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppSettings":
        data = data or {}
        return cls(name=str(data.get("name", "WellSync")).strip() or "WellSync")


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    source_name: str = ""
    read_only_calendar_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            source_name=str(data.get("source_name", "") or "").strip(),
            read_only_calendar_ids=[
                str(x).strip() for x in data.get("read_only_calendar_ids", []) or [] if str(x).strip()
            ],
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class RemoteConfig:
    client_id: str = ""
    client_secret: str = ""
    auth_uri: str = DEFAULT_REMOTE_AUTH_URI
    token_uri: str = DEFAULT_REMOTE_TOKEN_URI
    redirect_uri: str = ""
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_REMOTE_SCOPES))
    api_base_url: str = DEFAULT_REMOTE_API_BASE_URL
    calendar_id: str = "primary"
    page_size: int = 250
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        scopes = [str(x).strip() for x in data.get("scopes", DEFAULT_REMOTE_SCOPES) or [] if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            auth_uri=str(data.get("auth_uri", DEFAULT_REMOTE_AUTH_URI)).strip() or DEFAULT_REMOTE_AUTH_URI,
            token_uri=str(data.get("token_uri", DEFAULT_REMOTE_TOKEN_URI)).strip() or DEFAULT_REMOTE_TOKEN_URI,
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
            scopes=scopes or list(DEFAULT_REMOTE_SCOPES),
            api_base_url=str(data.get("api_base_url", DEFAULT_REMOTE_API_BASE_URL)).strip()
            or DEFAULT_REMOTE_API_BASE_URL,
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            page_size=min(2500, max(1, int(data.get("page_size", 250)))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.redirect_uri)


@dataclass
class SyncConfig:
    past_days: int = 30
    future_days: int = 90
    timeout_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            past_days=max(0, int(data.get("past_days", 30))),
            future_days=max(0, int(data.get("future_days", 90))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
        )


@dataclass
class PermissionConfig:
    platform: str = "ios"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PermissionConfig":
        data = data or {}
        platform = str(data.get("platform", "ios")).strip().lower()
        if platform not in PERMISSION_PLATFORMS:
            platform = "ios"
        return cls(platform=platform)


@dataclass
class AppConfig:
    app: AppSettings = field(default_factory=AppSettings)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    permission: PermissionConfig = field(default_factory=PermissionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            app=AppSettings.from_dict(data.get("app")),
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            remote=RemoteConfig.from_dict(data.get("remote")),
            sync=SyncConfig.from_dict(data.get("sync")),
            permission=PermissionConfig.from_dict(data.get("permission")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CalendarDescriptor:
    id: str
    display_name: str
    source_name: str = ""
    is_writable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EventRecord:
    title: str
    start: datetime
    end: datetime
    id: str = ""
    description: str = ""
    location: str = ""
    all_day: bool = False
    category: str = "personal"
    is_managed: bool = False
    origin_calendar_id: str = ""
    provider: str = PROVIDER_LOCAL
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["last_modified"] = serialize_datetime(self.last_modified)
        return payload

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        return replace(self, **kwargs)

    @property
    def dedup_key(self) -> tuple[str, datetime]:
        return self.title, _ensure_tz(self.start).replace(microsecond=0)


@dataclass
class EventPatch:
    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    location: str | None = None
    all_day: bool | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in asdict(self).values())


@dataclass(frozen=True)
class OAuthSession:
    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    scopes: tuple[str, ...] = ()

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        return _ensure_tz(self.expires_at) <= current

    def authorization_header(self) -> str:
        return f"{self.token_type or 'Bearer'} {self.access_token}"

    def __repr__(self) -> str:
        return f"OAuthSession(token_type={self.token_type!r}, expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


@dataclass(frozen=True)
class AccessGrant:
    granted: bool
    message: str = ""


@dataclass(frozen=True)
class SyncStatus:
    last_sync_at: datetime | None
    enabled: bool
    connected_calendar_ids: frozenset[str]
    in_progress: bool
    errors: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sync_at": serialize_datetime(self.last_sync_at),
            "enabled": self.enabled,
            "connected_calendar_ids": sorted(self.connected_calendar_ids),
            "in_progress": self.in_progress,
            "errors": list(self.errors),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    reason: str = ""
    events: list[EventRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    status_snapshot: SyncStatus | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "events": [event.to_dict() for event in self.events],
            "errors": list(self.errors),
            "state": self.status_snapshot.to_dict() if self.status_snapshot else None,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=max(0, past_days)), now_utc + timedelta(days=max(0, future_days))
