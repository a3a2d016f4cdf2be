from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from kuna_sync.caldav_client import CalDAVService
from kuna_sync.calendar_store import CalendarStore, InMemoryCalendarStore
from kuna_sync.config_manager import MASK, SECRET_FIELDS, ConfigManager
from kuna_sync.conflicts import ConflictDetector
from kuna_sync.errors import (
    AccessDenied,
    CalendarSyncError,
    InvalidPreferences,
    NoWritableSource,
    TeardownIncomplete,
    UnsupportedResolution,
)
from kuna_sync.mapper import resolve_timezone
from kuna_sync.models import (
    AppConfig,
    ConflictResolution,
    DisableDisposition,
    SyncMode,
    serialize_datetime,
)
from kuna_sync.preferences import PreferencesStore
from kuna_sync.scheduler import SyncScheduler
from kuna_sync.state_store import StateStore
from kuna_sync.sync_engine import ReconciliationEngine
from kuna_sync.task_api import TaskSource, VikunjaClient
from kuna_sync.teardown import TeardownFlow
from kuna_sync.topology import TopologyManager


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class OnboardingRequest(BaseModel):
    mode: SyncMode
    selected_project_ids: list[str] = Field(default_factory=list)
    enable: bool = True


class DisableRequest(BaseModel):
    disposition: DisableDisposition = DisableDisposition.KEEP_EVERYTHING


class ResolveConflictRequest(BaseModel):
    task_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    resolution: ConflictResolution


class AppContext:
    """Wires the sync components together from the YAML config.

    ``calendar_store`` and ``task_source`` can be injected; otherwise they are
    built from the ``sync.store``, ``caldav`` and ``task_api`` sections.
    """

    def __init__(
        self,
        config_path: str,
        state_path: str,
        *,
        calendar_store: CalendarStore | None = None,
        task_source: TaskSource | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.preferences = PreferencesStore(self.state_store)
        self._injected_store = calendar_store
        self._injected_source = task_source
        self.calendar_store: CalendarStore | None = None
        self._build(self.config_manager.load())
        self.scheduler = SyncScheduler(self.engine, self.config_manager)

    def _make_store(self, config: AppConfig) -> CalendarStore:
        if self._injected_store is not None:
            return self._injected_store
        if config.sync.store == "memory":
            if isinstance(self.calendar_store, InMemoryCalendarStore):
                return self.calendar_store
            return InMemoryCalendarStore()
        return CalDAVService(config.caldav, tz=resolve_timezone(config.sync.timezone))

    def _build(self, config: AppConfig) -> None:
        self.calendar_store = self._make_store(config)
        self.task_source = self._injected_source or VikunjaClient(config.task_api)
        writer = self.task_source if hasattr(self.task_source, "update_task") else None
        self.topology = TopologyManager(self.calendar_store, self.task_source, self.preferences)
        self.engine = ReconciliationEngine(
            self.calendar_store,
            self.task_source,
            self.preferences,
            state_store=self.state_store,
            sync_config=config.sync,
        )
        self.conflicts = ConflictDetector(
            self.calendar_store,
            self.task_source,
            self.preferences,
            sync_config=config.sync,
            task_writer=writer,
        )
        self.teardown = TeardownFlow(self.calendar_store, self.preferences)

    def reconfigure(self) -> None:
        self.engine.cancel()
        self._build(self.config_manager.load())
        self.scheduler.engine = self.engine
        logger.info("Sync components rebuilt from updated config")


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop empty or masked secrets so they never overwrite stored ones."""
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        value = section.get(key)
        if value is not None and str(value).strip() in {"", MASK}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def _error_status(exc: Exception) -> int:
    if isinstance(exc, AccessDenied):
        return 403
    if isinstance(exc, NoWritableSource):
        return 409
    if isinstance(exc, (InvalidPreferences, UnsupportedResolution)):
        return 400
    return 502


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("KUNA_SYNC_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("KUNA_SYNC_STATE_PATH", "data/state.db")
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Kuna Calendar Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        ctx = app.state.context
        current = ctx.config_manager.load().to_dict()
        ctx.config_manager.update(_sanitize_config_payload(request.payload, current))
        ctx.reconfigure()
        return {"message": "config updated", "config": ctx.config_manager.masked()}

    @app.get("/api/projects")
    def list_projects() -> dict[str, Any]:
        try:
            projects = app.state.context.task_source.list_projects()
        except CalendarSyncError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"projects": [{"id": p.project_id, "title": p.title} for p in projects]}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        ctx = app.state.context
        prefs = ctx.preferences.load()
        return {
            "enabled": prefs.enabled,
            "is_syncing": ctx.engine.is_syncing,
            "last_sync_date": serialize_datetime(ctx.engine.last_sync_date),
            "errors": ctx.engine.sync_errors,
            "runs": ctx.state_store.recent_sync_runs(limit=limit),
        }

    @app.post("/api/sync/run")
    def trigger_sync(wait: bool = False) -> dict[str, Any]:
        ctx = app.state.context
        if wait:
            return {"message": "sync finished", "result": ctx.engine.resync_now().to_dict()}
        ctx.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/errors/clear")
    def clear_sync_errors() -> dict[str, str]:
        app.state.context.engine.clear_errors()
        return {"message": "errors cleared"}

    @app.get("/api/preferences")
    def get_preferences() -> dict[str, Any]:
        ctx = app.state.context
        prefs = ctx.preferences.load()
        return {
            "preferences": prefs.to_dict(),
            "is_valid": prefs.is_valid,
            "last_error": ctx.topology.last_error,
        }

    @app.post("/api/onboarding")
    def onboarding(request: OnboardingRequest) -> dict[str, Any]:
        ctx = app.state.context
        ctx.topology.begin_onboarding()
        try:
            prefs = ctx.topology.complete_onboarding(request.mode, request.selected_project_ids)
            if request.enable:
                prefs = ctx.topology.set_enabled(True)
        except CalendarSyncError as exc:
            raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
        if prefs.enabled:
            ctx.scheduler.trigger_manual()
        return {"message": "onboarding completed", "preferences": prefs.to_dict()}

    @app.post("/api/disable")
    def disable(request: DisableRequest) -> dict[str, Any]:
        ctx = app.state.context
        ctx.engine.cancel()
        try:
            report = ctx.teardown.disable(request.disposition)
        except TeardownIncomplete as exc:
            raise HTTPException(
                status_code=502,
                detail={"message": "calendar sync disabled with errors", "errors": exc.errors},
            ) from exc
        return {"message": "calendar sync disabled", "report": report.to_dict()}

    @app.get("/api/conflicts")
    def list_conflicts(refresh: bool = True) -> dict[str, Any]:
        detector = app.state.context.conflicts
        if refresh:
            try:
                detector.scan()
            except CalendarSyncError as exc:
                raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
        return {"conflicts": [conflict.to_dict() for conflict in detector.conflicts]}

    @app.post("/api/conflicts/resolve")
    def resolve_conflict(request: ResolveConflictRequest) -> dict[str, Any]:
        detector = app.state.context.conflicts
        key = (request.task_id, request.project_id)
        conflict = next((item for item in detector.conflicts if item.key == key), None)
        if conflict is None:
            raise HTTPException(status_code=404, detail="conflict not found")
        try:
            applied = detector.resolve(conflict, request.resolution)
        except CalendarSyncError as exc:
            raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
        return {"message": "conflict resolved", "applied": applied}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, task_id: str | None = None) -> dict[str, Any]:
        store = app.state.context.state_store
        return {"events": store.recent_audit_events(limit=limit, run_id=run_id, task_id=task_id)}

    return app


app = create_app()
