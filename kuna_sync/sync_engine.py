from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable

from kuna_sync.calendar_store import CalendarStore, ensure_authorized
from kuna_sync.errors import (
    AccessDenied,
    InvalidPreferences,
    RemoteFetchFailed,
    StoreCommitFailed,
    StoreWriteFailed,
    describe_error,
)
from kuna_sync.mapper import (
    apply_task,
    build_sync_task,
    event_owner,
    event_span,
    expected_signature,
    extract_signature,
    new_event,
    resolve_timezone,
)
from kuna_sync.models import (
    CalendarEvent,
    CalendarRef,
    SyncConfig,
    SyncMode,
    SyncPreferences,
    SyncResult,
    SyncTask,
    TaskRecord,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
)
from kuna_sync.preferences import PreferencesStore
from kuna_sync.state_store import StateStore
from kuna_sync.task_api import TaskSource


LAST_SYNC_META_KEY = "last_sync_date"

logger = logging.getLogger(__name__)


@dataclass
class SyncScope:
    calendar: CalendarRef
    project_ids: list[str]


@dataclass
class FetchOutcome:
    project_id: str
    tasks: list[TaskRecord] = field(default_factory=list)
    error: str | None = None


@dataclass
class _PassState:
    errors: list[str] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    cancelled: bool = False

    def fail(self, message: str) -> None:
        self.errors.append(message)
        logger.warning("%s", message)


def _overlaps_window(start: datetime, end: datetime, window: tuple[datetime, datetime]) -> bool:
    return start < window[1] and end > window[0]


def resolve_scopes(prefs: SyncPreferences, task_source: TaskSource) -> list[SyncScope]:
    """Map preferences onto ``(calendar, projects)`` pairs for one pass."""
    if prefs.mode == SyncMode.SINGLE:
        project_ids = sorted(prefs.selected_project_ids)
        if not project_ids:
            project_ids = sorted(project.project_id for project in task_source.list_projects())
        return [SyncScope(calendar=prefs.single_calendar, project_ids=project_ids)]
    # Projects that resolved to the same calendar are reconciled together.
    scopes: dict[str, SyncScope] = {}
    for project_id in sorted(prefs.selected_project_ids):
        calendar = prefs.project_calendars[project_id]
        scope = scopes.setdefault(calendar.identifier, SyncScope(calendar=calendar, project_ids=[]))
        scope.project_ids.append(project_id)
    return list(scopes.values())


def fetch_tasks(task_source: TaskSource, project_ids: list[str], max_workers: int) -> dict[str, FetchOutcome]:
    if not project_ids:
        return {}
    outcomes: dict[str, FetchOutcome] = {}
    workers = max(1, min(max_workers, len(project_ids)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kuna-fetch") as pool:
        futures = {project_id: pool.submit(task_source.list_tasks, project_id) for project_id in project_ids}
    for project_id, future in futures.items():
        try:
            outcomes[project_id] = FetchOutcome(project_id=project_id, tasks=list(future.result()))
        except Exception as exc:
            outcomes[project_id] = FetchOutcome(
                project_id=project_id,
                error=str(RemoteFetchFailed(project_id, describe_error(exc))),
            )
    return outcomes


class ReconciliationEngine:
    """Runs sync passes that project remote tasks onto owned calendar events.

    Only one pass runs at a time; a call that arrives while a pass is running
    returns a ``skipped`` result instead of queueing. ``sync_errors`` and
    ``last_sync_date`` are replaced as a whole at the end of each pass.
    """

    def __init__(
        self,
        calendar_store: CalendarStore,
        task_source: TaskSource,
        preferences: PreferencesStore,
        state_store: StateStore | None = None,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.calendar_store = calendar_store
        self.task_source = task_source
        self.preferences = preferences
        self.state_store = state_store
        self.sync_config = sync_config or SyncConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tz: tzinfo = resolve_timezone(self.sync_config.timezone)
        self._guard = threading.Lock()
        self._is_syncing = False
        self._cancel_event = threading.Event()
        self._sync_errors: tuple[str, ...] = ()
        self.last_sync_date: datetime | None = self._load_last_sync_date()

    def _load_last_sync_date(self) -> datetime | None:
        if self.state_store is None:
            return None
        raw = self.state_store.get_meta(LAST_SYNC_META_KEY)
        try:
            return parse_iso_datetime(raw)
        except ValueError:
            return None

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def sync_errors(self) -> list[str]:
        return list(self._sync_errors)

    def clear_errors(self) -> None:
        self._sync_errors = ()

    def cancel(self) -> None:
        self._cancel_event.set()

    def window(self) -> tuple[datetime, datetime]:
        return sync_window(self.clock(), self.sync_config.window_back_days, self.sync_config.window_forward_days)

    def resync_now(self) -> SyncResult:
        return self.run_pass(trigger="manual")

    def run_pass(self, trigger: str = "scheduled") -> SyncResult:
        with self._guard:
            if self._is_syncing:
                return SyncResult(
                    status="skipped",
                    message="A sync pass is already running.",
                    duration_ms=0,
                    trigger=trigger,
                )
            self._is_syncing = True
            self._cancel_event.clear()
        try:
            self._sync_errors = ()
            return self._run(trigger, datetime.now(timezone.utc))
        finally:
            with self._guard:
                self._is_syncing = False

    def _run(self, trigger: str, started_at: datetime) -> SyncResult:
        state = _PassState()
        prefs = self.preferences.load()
        if not prefs.enabled:
            return self._finish(trigger, started_at, state, "skipped", "Calendar sync is disabled.", completed=False)
        if not prefs.is_valid:
            state.fail(str(InvalidPreferences("Sync preferences are incomplete; treating sync as disabled.")))
            return self._finish(trigger, started_at, state, "skipped", "Sync preferences are invalid.", completed=False)

        try:
            ensure_authorized(self.calendar_store)
        except AccessDenied as exc:
            state.fail(str(exc))
            return self._finish(trigger, started_at, state, "error", "Calendar access denied.", completed=False)
        except Exception as exc:
            state.fail(f"Calendar store unavailable: {describe_error(exc)}")
            return self._finish(trigger, started_at, state, "error", "Calendar store unavailable.", completed=False)

        try:
            scopes = resolve_scopes(prefs, self.task_source)
        except Exception as exc:
            state.fail(f"Listing projects failed: {describe_error(exc)}")
            return self._finish(trigger, started_at, state, "error", "Could not resolve sync scope.", completed=False)

        window = self.window()
        project_ids = sorted({pid for scope in scopes for pid in scope.project_ids})
        outcomes = fetch_tasks(self.task_source, project_ids, self.sync_config.fetch_workers)
        for project_id in project_ids:
            if outcomes[project_id].error:
                state.fail(outcomes[project_id].error)

        for scope in scopes:
            if state.cancelled:
                break
            self._reconcile_calendar(scope, outcomes, window, state)

        if state.cancelled:
            status, message = "cancelled", "Sync pass cancelled."
        elif state.errors:
            status, message = "partial", f"Sync finished with {len(state.errors)} error(s)."
        else:
            status, message = "success", "Sync finished."
        return self._finish(trigger, started_at, state, status, message, completed=True)

    def _collect_tasks(
        self,
        scope: SyncScope,
        outcomes: dict[str, FetchOutcome],
        window: tuple[datetime, datetime],
        state: _PassState,
    ) -> tuple[dict[tuple[str, str], tuple[SyncTask, str]], set[tuple[str, str]]]:
        tasks: dict[tuple[str, str], tuple[SyncTask, str]] = {}
        unmapped: set[tuple[str, str]] = set()
        for project_id in scope.project_ids:
            outcome = outcomes.get(project_id)
            if outcome is None or outcome.error:
                continue
            for record in outcome.tasks:
                if record.done:
                    continue
                project = record.project_id or project_id
                if record.parse_error:
                    unmapped.add((record.task_id, project))
                    state.fail(f"Could not map task {record.task_id}: {record.parse_error}")
                    continue
                try:
                    task = build_sync_task(record, self.tz)
                    if task is None:
                        continue
                    task.project_id = project
                    start, end = event_span(task, self.tz)
                    if not _overlaps_window(start, end, window):
                        continue
                    tasks[task.key] = (task, expected_signature(task, self.tz))
                except (ValueError, TypeError, OverflowError) as exc:
                    unmapped.add((record.task_id, project))
                    state.fail(f"Could not map task {record.task_id}: {describe_error(exc)}")
        return tasks, unmapped

    def _reconcile_calendar(
        self,
        scope: SyncScope,
        outcomes: dict[str, FetchOutcome],
        window: tuple[datetime, datetime],
        state: _PassState,
    ) -> None:
        calendar = scope.calendar
        tasks, unmapped = self._collect_tasks(scope, outcomes, window, state)
        failed_projects = {pid for pid in scope.project_ids if outcomes.get(pid) is None or outcomes[pid].error}

        try:
            existing = self.calendar_store.events_owned([calendar], window[0], window[1])
        except Exception as exc:
            state.fail(f"Reading calendar {calendar.name!r} failed: {describe_error(exc)}")
            return

        by_key: dict[tuple[str, str], CalendarEvent] = {}
        duplicates: list[CalendarEvent] = []
        for event in sorted(existing, key=lambda item: (item.uid or "", item.href or "")):
            owner = event_owner(event)
            if owner is None:
                continue
            if owner in by_key:
                duplicates.append(event)
            else:
                by_key[owner] = event

        batch: list[dict[str, Any]] = []
        for key in sorted(tasks):
            if self._cancel_event.is_set():
                state.cancelled = True
                break
            task, signature = tasks[key]
            current = by_key.pop(key, None)
            if current is None:
                self._apply(batch, state, "create", calendar, task.task_id, lambda: new_event(task, calendar.identifier, self.tz))
            elif extract_signature(current.notes) != signature:
                self._apply(batch, state, "update", calendar, task.task_id, lambda: apply_task(task, current, self.tz))

        stale = [
            event
            for key, event in sorted(by_key.items())
            if key[1] not in failed_projects and key not in unmapped
        ]
        for event in stale + duplicates:
            if state.cancelled or self._cancel_event.is_set():
                state.cancelled = True
                break
            owner = event_owner(event) or ("", "")
            self._apply(batch, state, "delete", calendar, owner[0], lambda: event)

        try:
            self.calendar_store.commit()
        except Exception as exc:
            state.fail(str(StoreCommitFailed(calendar.name, describe_error(exc))))
            return
        for item in batch:
            if item["action"] == "create":
                state.created += 1
            elif item["action"] == "update":
                state.updated += 1
            else:
                state.deleted += 1
        state.actions.extend(batch)

    def _apply(
        self,
        batch: list[dict[str, Any]],
        state: _PassState,
        action: str,
        calendar: CalendarRef,
        task_id: str,
        build: Callable[[], CalendarEvent],
    ) -> None:
        try:
            event = build()
            if action == "delete":
                self.calendar_store.remove_event(event)
                saved = event
            else:
                saved = self.calendar_store.save_event(event)
        except Exception as exc:
            state.fail(str(StoreWriteFailed(action, task_id, describe_error(exc))))
            return
        batch.append(
            {
                "action": action,
                "calendar_id": calendar.identifier,
                "uid": saved.uid,
                "task_id": task_id,
                "title": saved.title,
                "start": serialize_datetime(saved.start),
                "end": serialize_datetime(saved.end),
            }
        )

    def _finish(
        self,
        trigger: str,
        started_at: datetime,
        state: _PassState,
        status: str,
        message: str,
        *,
        completed: bool,
    ) -> SyncResult:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        if completed:
            self.last_sync_date = self.clock()
        self._sync_errors = tuple(state.errors)
        result = SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            trigger=trigger,
            created=state.created,
            updated=state.updated,
            deleted=state.deleted,
            errors=list(state.errors),
        )
        self._record(result, state, completed)
        logger.info(
            "Sync pass %s (%s): created=%d updated=%d deleted=%d errors=%d",
            status,
            trigger,
            result.created,
            result.updated,
            result.deleted,
            len(result.errors),
        )
        return result

    def _record(self, result: SyncResult, state: _PassState, completed: bool) -> None:
        if self.state_store is None:
            return
        try:
            if completed and self.last_sync_date is not None:
                self.state_store.set_meta(LAST_SYNC_META_KEY, serialize_datetime(self.last_sync_date) or "")
            run_id = self.state_store.record_sync_run(
                trigger=result.trigger,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                errors=result.errors,
            )
            for item in state.actions:
                details = {key: value for key, value in item.items() if key not in {"calendar_id", "uid", "action"}}
                details["trigger"] = result.trigger
                self.state_store.record_audit_event(
                    calendar_id=item["calendar_id"],
                    uid=item["uid"],
                    action=f"{item['action']}_event",
                    details=details,
                    task_id=str(item.get("task_id", "")),
                    run_id=run_id,
                )
            self.state_store.prune(self.sync_config.history_runs)
        except sqlite3.Error:
            logger.exception("Recording sync run failed")
