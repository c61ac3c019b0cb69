from __future__ import annotations

import logging
import secrets
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from wellsync.classifier import stamp_managed_marker
from wellsync.models import (
    AuthorizationRequest,
    EventPatch,
    EventRecord,
    OAuthSession,
    SyncConfig,
    SyncResult,
    SyncStatus,
    serialize_datetime,
    sync_window,
)
from wellsync.permission_gate import PermissionGate
from wellsync.providers import LocalCalendarProvider, RemoteCalendarProvider
from wellsync.reconciler import in_scope_calendars, merge_events
from wellsync.remote_client import (
    AuthorizationError,
    RemoteAuthorizationError,
    TokenExchangeError,
)
from wellsync.state_store import StateStore


logger = logging.getLogger(__name__)

REASON_PERMISSION_DENIED = "permission_denied"
REASON_NO_WRITABLE_CALENDARS = "no_writable_calendars"
REASON_ALREADY_RUNNING = "already_running"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class SyncState:
    """Mutable sync status shared by every caller of one engine."""

    def __init__(self) -> None:
        self.last_sync_at: datetime | None = None
        self.enabled = False
        self.connected_calendar_ids: set[str] = set()
        self.in_progress = False
        self.errors: list[str] = []
        self._lock = threading.Lock()

    def try_begin(self) -> bool:
        with self._lock:
            if self.in_progress:
                return False
            self.in_progress = True
            self.errors = []
            return True

    def release(self) -> None:
        with self._lock:
            self.in_progress = False

    def mark_success(self, synced_at: datetime, calendar_ids: Sequence[str]) -> None:
        with self._lock:
            self.last_sync_at = synced_at
            self.enabled = True
            self.connected_calendar_ids = set(calendar_ids)
            self.in_progress = False

    def set_enabled(self, on: bool) -> bool:
        with self._lock:
            previous = self.enabled
            self.enabled = on
            return previous

    def disable_if_never_synced(self) -> None:
        with self._lock:
            if self.last_sync_at is None:
                self.enabled = False

    def add_error(self, message: str) -> None:
        with self._lock:
            self.errors.append(message)

    def snapshot(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                last_sync_at=self.last_sync_at,
                enabled=self.enabled,
                connected_calendar_ids=frozenset(self.connected_calendar_ids),
                in_progress=self.in_progress,
                errors=tuple(self.errors),
            )


class SyncEngine:
    def __init__(
        self,
        local_provider: LocalCalendarProvider,
        *,
        remote_provider: RemoteCalendarProvider | None = None,
        permission_gate: PermissionGate | None = None,
        sync_config: SyncConfig | None = None,
        app_name: str = "WellSync",
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.local_provider = local_provider
        self.remote_provider = remote_provider
        self.permission_gate = permission_gate or PermissionGate(local_provider, app_name=app_name)
        self.sync_config = sync_config or SyncConfig()
        self.app_name = app_name
        self.state_store = state_store
        self.clock = clock
        self._state = SyncState()
        self._session: OAuthSession | None = None
        self._pending_authorization: AuthorizationRequest | None = None
        self._auth_lock = threading.Lock()
        self._inflight: dict[str, Future[list[EventRecord]]] = {}

    # -- status ---------------------------------------------------------

    def get_status(self) -> SyncStatus:
        return self._state.snapshot()

    @property
    def has_remote_session(self) -> bool:
        return self._session is not None

    def enable(self, on: bool) -> SyncResult | None:
        previous = self._state.set_enabled(on)
        logger.info("Calendar sync %s", "enabled" if on else "disabled")
        if not on or previous:
            return None
        result = self.synchronize(trigger="enable")
        if result.status == "fatal":
            self._state.disable_if_never_synced()
            result.status_snapshot = self.get_status()
        return result

    def _record_error(self, message: str) -> None:
        logger.warning("Calendar sync: %s", message)
        self._state.add_error(message)

    # -- reconciliation -------------------------------------------------

    def synchronize(self, trigger: str = "manual", timeout: float | None = None) -> SyncResult:
        started = time.monotonic()
        if not self._state.try_begin():
            logger.info("Sync requested (%s) while another sync is running", trigger)
            return SyncResult(
                status="busy",
                reason=REASON_ALREADY_RUNNING,
                message="sync already running",
                duration_ms=0,
                trigger=trigger,
                status_snapshot=self.get_status(),
            )

        logger.info("Calendar sync started (trigger=%s)", trigger)
        try:
            result = self._run(trigger, self._effective_timeout(timeout))
        finally:
            self._state.release()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        result.status_snapshot = self.get_status()
        result.errors = list(result.status_snapshot.errors)
        if result.ok:
            logger.info("Calendar sync finished: %s", result.message)
        else:
            logger.error("Calendar sync failed (%s): %s", result.reason, result.message)
        if self.state_store is not None:
            self.state_store.record_sync_run(
                trigger=trigger,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                event_count=len(result.events),
                error_count=len(result.errors),
            )
        return result

    def _effective_timeout(self, timeout: float | None) -> float:
        if timeout is None:
            return float(self.sync_config.timeout_seconds)
        return max(0.0, float(timeout))

    def _fatal(self, trigger: str, reason: str, message: str) -> SyncResult:
        return SyncResult(status="fatal", reason=reason, message=message, duration_ms=0, trigger=trigger)

    def _run(self, trigger: str, timeout: float) -> SyncResult:
        grant = self.permission_gate.request_access(timeout=timeout)
        if not grant.granted:
            message = "no accessible calendars"
            if grant.message:
                message = f"{message}. {grant.message}"
            return self._fatal(trigger, REASON_PERMISSION_DENIED, message)

        try:
            calendars = self.local_provider.list_calendars()
        except Exception as exc:
            self._record_error(f"Error getting calendars: {_describe(exc)}")
            calendars = []
        in_scope = in_scope_calendars(calendars)
        if not in_scope:
            return self._fatal(trigger, REASON_NO_WRITABLE_CALENDARS, "no writable calendars found")

        now = self.clock()
        window_start, window_end = sync_window(now, self.sync_config.past_days, self.sync_config.future_days)
        calendar_ids = [calendar.id for calendar in in_scope]
        logger.debug(
            "Sync window %s .. %s over %d calendars",
            serialize_datetime(window_start),
            serialize_datetime(window_end),
            len(calendar_ids),
        )
        local_events, remote_events = self._fetch_events(calendar_ids, window_start, window_end, now, timeout)
        events = merge_events(local_events, remote_events)

        self._state.mark_success(now, calendar_ids)
        return SyncResult(
            status="success",
            message=(
                f"Synced {len(events)} events from {len(calendar_ids)} calendars "
                f"({len(local_events)} local, {len(remote_events)} remote)."
            ),
            duration_ms=0,
            trigger=trigger,
            events=events,
        )

    def _fetch_events(
        self,
        calendar_ids: list[str],
        window_start: datetime,
        window_end: datetime,
        now: datetime,
        timeout: float,
    ) -> tuple[list[EventRecord], list[EventRecord]]:
        # A fetch that timed out keeps running on its abandoned worker and still
        # holds the provider, so a provider is skipped until that fetch finishes.
        session = self._session
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="wellsync-fetch")
        try:
            local_future = self._submit(
                executor,
                "local",
                "Local calendar",
                self.local_provider.list_events,
                calendar_ids,
                window_start,
                window_end,
            )
            remote_future: Future[list[EventRecord]] | None = None
            if session is not None and self.remote_provider is not None:
                if session.is_expired(now):
                    self._record_error("Remote calendar authorization expired; connect the calendar again")
                else:
                    remote_future = self._submit(
                        executor,
                        "remote",
                        "Remote calendar",
                        self.remote_provider.list_events,
                        session,
                        window_start,
                        window_end,
                    )
            deadline = time.monotonic() + timeout
            local_events: list[EventRecord] = []
            if local_future is not None:
                local_events = self._collect(local_future, "Local calendar", deadline, timeout)
            remote_events: list[EventRecord] = []
            if remote_future is not None:
                remote_events = self._collect(remote_future, "Remote calendar", deadline, timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return local_events, remote_events

    def _submit(
        self,
        executor: ThreadPoolExecutor,
        key: str,
        label: str,
        fn: Callable[..., list[EventRecord]],
        *args: Any,
    ) -> Future[list[EventRecord]] | None:
        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            self._record_error(f"{label} fetch skipped: previous fetch still running")
            return None
        future = executor.submit(fn, *args)
        self._inflight[key] = future
        return future

    def _collect(self, future: Future, label: str, deadline: float, timeout: float) -> list[EventRecord]:
        remaining = max(0.0, deadline - time.monotonic())
        try:
            return list(future.result(timeout=remaining))
        except FutureTimeoutError:
            self._record_error(f"{label} fetch timed out after {timeout:g}s")
        except RemoteAuthorizationError as exc:
            self._record_error(f"{label} authorization error: {exc}")
            with self._auth_lock:
                self._session = None
        except Exception as exc:
            self._record_error(f"{label} error: {_describe(exc)}")
        return []

    # -- write path -----------------------------------------------------

    def _ensure_local_access(self, action: str) -> bool:
        grant = self.permission_gate.request_access(timeout=float(self.sync_config.timeout_seconds))
        if grant.granted:
            return True
        self._record_error(f"Error {action}: calendar permission not granted")
        return False

    def _default_calendar_id(self) -> str:
        calendars = in_scope_calendars(self.local_provider.list_calendars())
        if not calendars:
            raise RuntimeError("No writable calendars available")
        return calendars[0].id

    def _audit(self, calendar_id: str, event_id: str, action: str, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            calendar_id=calendar_id,
            event_id=event_id,
            action=action,
            details=details,
        )

    def create_managed_event(self, event: EventRecord, calendar_id: str | None = None) -> str | None:
        if not self._ensure_local_access("creating event"):
            return None
        try:
            target_calendar_id = calendar_id or self._default_calendar_id()
            stamped = event.with_updates(description=stamp_managed_marker(event.description, self.app_name))
            new_id = self.local_provider.create_event(target_calendar_id, stamped)
        except Exception as exc:
            self._record_error(f"Error creating event: {_describe(exc)}")
            return None
        self._audit(
            target_calendar_id,
            new_id,
            "create_managed_event",
            {"title": event.title, "start": serialize_datetime(event.start)},
        )
        return new_id

    def update_managed_event(self, event_id: str, patch: EventPatch) -> bool:
        if not self._ensure_local_access("updating event"):
            return False
        try:
            description = patch.description
            if description is None:
                description = self.local_provider.get_event(event_id).description
            patch = EventPatch(
                title=patch.title,
                description=stamp_managed_marker(description, self.app_name, updated=True),
                start=patch.start,
                end=patch.end,
                location=patch.location,
                all_day=patch.all_day,
            )
            self.local_provider.update_event(event_id, patch)
        except Exception as exc:
            self._record_error(f"Error updating event: {_describe(exc)}")
            return False
        changed = [name for name, value in vars(patch).items() if value is not None]
        self._audit("", event_id, "update_managed_event", {"fields": changed})
        return True

    def delete_managed_event(self, event_id: str) -> bool:
        if not self._ensure_local_access("deleting event"):
            return False
        try:
            self.local_provider.delete_event(event_id)
        except Exception as exc:
            self._record_error(f"Error deleting event: {_describe(exc)}")
            return False
        self._audit("", event_id, "delete_managed_event", {})
        return True

    def create_remote_managed_event(self, event: EventRecord) -> str | None:
        session = self._session
        if session is None or self.remote_provider is None:
            self._record_error("Error creating remote event: remote calendar is not connected")
            return None
        stamped = event.with_updates(description=stamp_managed_marker(event.description, self.app_name))
        try:
            new_id = self.remote_provider.create_event(session, stamped)
        except Exception as exc:
            self._record_error(f"Error creating remote event: {_describe(exc)}")
            return None
        self._audit(
            "remote",
            new_id,
            "create_remote_managed_event",
            {"title": event.title, "start": serialize_datetime(event.start)},
        )
        return new_id

    # -- remote authorization -------------------------------------------

    def begin_authorization(self) -> AuthorizationRequest:
        if self.remote_provider is None:
            raise RuntimeError("Remote calendar provider is not configured.")
        request = self.remote_provider.begin_authorization()
        with self._auth_lock:
            self._pending_authorization = request
        return request

    def complete_authorization(self, code: str, state: str) -> bool:
        with self._auth_lock:
            pending = self._pending_authorization
            self._pending_authorization = None
        if pending is None or not state or not secrets.compare_digest(
            pending.state.encode("utf-8"), str(state).encode("utf-8")
        ):
            logger.warning("Rejected authorization callback with an unexpected state")
            raise AuthorizationError("OAuth state mismatch; start the authorization again.")
        if self.remote_provider is None:
            raise RuntimeError("Remote calendar provider is not configured.")
        try:
            session = self.remote_provider.exchange_code(code, state)
        except TokenExchangeError as exc:
            self._record_error(f"Remote authorization error: {exc}")
            return False
        with self._auth_lock:
            self._session = session
        logger.info("Remote calendar connected")
        return True

    def sign_out_remote(self) -> None:
        with self._auth_lock:
            self._session = None
            self._pending_authorization = None
        if self.remote_provider is not None:
            self.remote_provider.cancel_authorization()
