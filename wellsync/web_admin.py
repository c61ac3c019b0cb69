from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from wellsync.caldav_client import CalDAVCalendarProvider
from wellsync.config_manager import SECRET_FIELDS, ConfigError, ConfigManager
from wellsync.models import AppConfig, EventPatch, EventRecord, normalize_event_times, parse_iso_datetime
from wellsync.permission_gate import PermissionGate
from wellsync.reconciler import is_in_scope
from wellsync.remote_client import AuthorizationError, GoogleCalendarProvider
from wellsync.state_store import StateStore
from wellsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

SYNC_ENABLED_KEY = "sync_enabled"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    timeout_seconds: float | None = Field(default=None, gt=0)


class SyncEnableRequest(BaseModel):
    enabled: bool


class EventCreateRequest(BaseModel):
    calendar_id: str | None = None
    title: str = Field(min_length=1, max_length=500)
    start: str
    end: str | None = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    remote: bool = False


class EventUpdateRequest(BaseModel):
    event_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    start: str | None = None
    end: str | None = None
    location: str | None = None
    all_day: bool | None = None


class AuthorizationCompleteRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)


def build_sync_engine(config: AppConfig, state_store: StateStore | None = None) -> SyncEngine:
    local_provider = CalDAVCalendarProvider(config.caldav)
    return SyncEngine(
        local_provider,
        remote_provider=GoogleCalendarProvider(config.remote),
        permission_gate=PermissionGate(
            local_provider,
            platform=config.permission.platform,
            app_name=config.app.name,
        ),
        sync_config=config.sync,
        app_name=config.app.name,
        state_store=state_store,
    )


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = build_sync_engine(self.config_manager.load(), self.state_store)

    def reconfigure(self) -> None:
        """Point the running engine at freshly loaded settings, keeping its state."""
        config = self.config_manager.load()
        local_provider = CalDAVCalendarProvider(config.caldav)
        engine = self.sync_engine
        engine.local_provider = local_provider
        engine.permission_gate = PermissionGate(
            local_provider,
            platform=config.permission.platform,
            app_name=config.app.name,
        )
        remote = engine.remote_provider
        if not isinstance(remote, GoogleCalendarProvider) or remote.config != config.remote:
            # A pending authorization belongs to the old client settings and is dropped with them.
            engine.remote_provider = GoogleCalendarProvider(config.remote)
        engine.sync_config = config.sync
        engine.app_name = config.app.name


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        secret = section.get(key)
        if secret is not None and str(secret).strip() in {"", "***"}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if not section:
            sanitized.pop(section_name, None)
    return sanitized


def _parse_request_datetime(value: str | None, field_name: str) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name} datetime") from exc


def create_app() -> FastAPI:
    config_path = os.getenv("WELLSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("WELLSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="WellSync Admin", version="0.1.0")
    app.state.context = context
    app.state.restore_thread = None

    @app.on_event("startup")
    def _startup() -> None:
        # Sync state lives in memory only; re-enable if it was on before the restart.
        if app.state.context.state_store.get_meta(SYNC_ENABLED_KEY) == "1":
            logger.info("Restoring calendar sync enabled before restart")
            thread = threading.Thread(
                target=app.state.context.sync_engine.enable,
                args=(True,),
                name="wellsync-restore-sync",
                daemon=True,
            )
            app.state.restore_thread = thread
            thread.start()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.reconfigure()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/status")
    def get_status() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        return {
            "state": engine.get_status().to_dict(),
            "remote_connected": engine.has_remote_session,
        }

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        timeout = request.timeout_seconds if request is not None else None
        result = app.state.context.sync_engine.synchronize(trigger="manual", timeout=timeout)
        if result.status == "busy":
            raise HTTPException(status_code=409, detail=result.message)
        return {"result": result.to_dict()}

    @app.post("/api/sync/enable")
    def enable_sync(request: SyncEnableRequest) -> dict[str, Any]:
        context = app.state.context
        context.state_store.set_meta(SYNC_ENABLED_KEY, "1" if request.enabled else "0")
        result = context.sync_engine.enable(request.enabled)
        return {
            "state": context.sync_engine.get_status().to_dict(),
            "result": result.to_dict() if result is not None else None,
        }

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        grant = engine.permission_gate.request_access(timeout=float(engine.sync_config.timeout_seconds))
        if not grant.granted:
            raise HTTPException(status_code=403, detail=grant.message)
        try:
            calendars = engine.local_provider.list_calendars()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        output = []
        for calendar in calendars:
            item = calendar.to_dict()
            item["in_scope"] = is_in_scope(calendar)
            output.append(item)
        return {"calendars": output}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        start = _parse_request_datetime(request.start, "start")
        end = _parse_request_datetime(request.end, "end")
        if start is None:
            raise HTTPException(status_code=400, detail="start is required")
        start, end = normalize_event_times(start, end, request.all_day)
        event = EventRecord(
            title=request.title.strip(),
            description=request.description,
            location=request.location,
            start=start,
            end=end,
            all_day=request.all_day,
        )
        if request.remote:
            event_id = engine.create_remote_managed_event(event)
        else:
            event_id = engine.create_managed_event(event, calendar_id=request.calendar_id or None)
        return {
            "ok": event_id is not None,
            "id": event_id,
            "errors": list(engine.get_status().errors),
        }

    @app.patch("/api/events")
    def update_event(request: EventUpdateRequest) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        patch = EventPatch(
            title=request.title,
            description=request.description,
            start=_parse_request_datetime(request.start, "start"),
            end=_parse_request_datetime(request.end, "end"),
            location=request.location,
            all_day=request.all_day,
        )
        if patch.start is not None and patch.end is not None and patch.end < patch.start:
            raise HTTPException(status_code=400, detail="end must be later than start")
        ok = engine.update_managed_event(request.event_id, patch)
        return {"ok": ok, "errors": list(engine.get_status().errors)}

    @app.delete("/api/events")
    def delete_event(event_id: str) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        ok = engine.delete_managed_event(event_id)
        return {"ok": ok, "errors": list(engine.get_status().errors)}

    @app.post("/api/remote/authorize")
    def begin_authorization() -> dict[str, str]:
        try:
            request = app.state.context.sync_engine.begin_authorization()
        except RuntimeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"authorization_url": request.url, "state": request.state}

    @app.post("/api/remote/complete")
    def complete_authorization(request: AuthorizationCompleteRequest) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        try:
            connected = engine.complete_authorization(request.code, request.state)
        except AuthorizationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"connected": connected, "errors": list(engine.get_status().errors)}

    @app.post("/api/remote/sign-out")
    def sign_out_remote() -> dict[str, bool]:
        app.state.context.sync_engine.sign_out_remote()
        return {"connected": False}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit)}

    return app

