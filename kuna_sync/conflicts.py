from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable

from kuna_sync.calendar_store import CalendarStore, ensure_authorized
from kuna_sync.errors import TaskAPIError, UnsupportedResolution
from kuna_sync.mapper import (
    alarm_offsets,
    apply_task,
    build_sync_task,
    event_owner,
    event_span,
    expected_signature,
    extract_patch,
    extract_signature,
    resolve_timezone,
    signature_for_event,
    signature_instant,
    strip_markers,
)
from kuna_sync.models import (
    CalendarEvent,
    ConflictResolution,
    ConflictType,
    SyncConfig,
    SyncConflict,
    SyncTask,
    sync_window,
)
from kuna_sync.preferences import PreferencesStore
from kuna_sync.sync_engine import SyncScope, fetch_tasks, resolve_scopes
from kuna_sync.task_api import TaskSource, TaskWriter


logger = logging.getLogger(__name__)


def diverging_field(task: SyncTask, event: CalendarEvent, tz: tzinfo) -> ConflictType:
    start, end = event_span(task, tz)
    if (event.title or "") != (task.title or ""):
        return ConflictType.TITLE
    if strip_markers(event.notes) != strip_markers(task.notes):
        return ConflictType.DESCRIPTION
    if event.all_day != task.is_all_day or signature_instant(event.start, event.all_day) != signature_instant(
        start, task.is_all_day
    ):
        return ConflictType.START_DATE
    if signature_instant(event.end, event.all_day) != signature_instant(end, task.is_all_day):
        return ConflictType.END_DATE
    if sorted(event.alarms) != sorted(alarm_offsets(task)):
        return ConflictType.REMINDERS
    return ConflictType.TITLE


def detect_conflict(task: SyncTask, event: CalendarEvent, tz: tzinfo) -> SyncConflict | None:
    """Report a conflict when the event was edited locally and the task was not.

    The engine-written signature still matching the task means the remote side
    is unchanged; the event's own content no longer matching that signature
    means someone edited it in the calendar.
    """
    stored = extract_signature(event.notes)
    if stored is None or stored != expected_signature(task, tz):
        return None
    if signature_for_event(event) == stored:
        return None
    return SyncConflict(
        task_id=task.task_id,
        project_id=task.project_id,
        task_title=task.title,
        task_last_modified=task.updated_at,
        event_last_modified=event.last_modified,
        conflict_type=diverging_field(task, event, tz),
    )


class ConflictDetector:
    """Finds owned events edited in the calendar and applies user-chosen resolutions.

    Conflicts live in memory only; every ``scan()`` starts from an empty list.
    """

    def __init__(
        self,
        calendar_store: CalendarStore,
        task_source: TaskSource,
        preferences: PreferencesStore,
        sync_config: SyncConfig | None = None,
        task_writer: TaskWriter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.calendar_store = calendar_store
        self.task_source = task_source
        self.preferences = preferences
        self.sync_config = sync_config or SyncConfig()
        self.task_writer = task_writer
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tz = resolve_timezone(self.sync_config.timezone)
        self.conflicts: list[SyncConflict] = []

    def _window(self) -> tuple[datetime, datetime]:
        return sync_window(self.clock(), self.sync_config.window_back_days, self.sync_config.window_forward_days)

    def _scopes(self) -> list[SyncScope]:
        prefs = self.preferences.load()
        if not prefs.is_active:
            return []
        ensure_authorized(self.calendar_store)
        return resolve_scopes(prefs, self.task_source)

    def _tasks_for(self, scope: SyncScope, outcomes) -> dict[tuple[str, str], SyncTask]:
        tasks: dict[tuple[str, str], SyncTask] = {}
        for project_id in scope.project_ids:
            outcome = outcomes.get(project_id)
            if outcome is None or outcome.error:
                continue
            for record in outcome.tasks:
                if record.done or record.parse_error:
                    continue
                task = build_sync_task(record, self.tz)
                if task is None:
                    continue
                task.project_id = record.project_id or project_id
                tasks[task.key] = task
        return tasks

    def scan(self) -> list[SyncConflict]:
        self.conflicts = []
        scopes = self._scopes()
        if not scopes:
            return []
        window = self._window()
        project_ids = sorted({pid for scope in scopes for pid in scope.project_ids})
        outcomes = fetch_tasks(self.task_source, project_ids, self.sync_config.fetch_workers)
        found: list[SyncConflict] = []
        for scope in scopes:
            tasks = self._tasks_for(scope, outcomes)
            for event in self.calendar_store.events_owned([scope.calendar], window[0], window[1]):
                task = tasks.get(event_owner(event) or ("", ""))
                if task is None:
                    continue
                conflict = detect_conflict(task, event, self.tz)
                if conflict is not None:
                    found.append(conflict)
        self.conflicts = found
        logger.info("Conflict scan found %d conflict(s)", len(found))
        return list(found)

    def _locate(self, conflict: SyncConflict) -> tuple[SyncTask | None, CalendarEvent | None]:
        for scope in self._scopes():
            if conflict.project_id not in scope.project_ids:
                continue
            outcomes = fetch_tasks(self.task_source, [conflict.project_id], 1)
            if outcomes[conflict.project_id].error:
                raise TaskAPIError(outcomes[conflict.project_id].error)
            task = self._tasks_for(SyncScope(scope.calendar, [conflict.project_id]), outcomes).get(conflict.key)
            window = self._window()
            for event in self.calendar_store.events_owned([scope.calendar], window[0], window[1]):
                if event_owner(event) == conflict.key:
                    return task, event
            return task, None
        return None, None

    def _drop(self, conflict: SyncConflict) -> None:
        self.conflicts = [item for item in self.conflicts if item.key != conflict.key]

    def resolve(self, conflict: SyncConflict, resolution: ConflictResolution | str) -> bool:
        """Apply ``resolution``; returns whether anything was written."""
        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.PREFER_EVENT and self.task_writer is None:
            raise UnsupportedResolution("Writing calendar edits back to tasks is not configured.")

        task, event = self._locate(conflict)
        if task is None or event is None:
            self._drop(conflict)
            return False

        if resolution == ConflictResolution.PREFER_TASK:
            self.calendar_store.save_event(apply_task(task, event, self.tz))
            self.calendar_store.commit()
        else:
            patch = extract_patch(event)
            if patch is None:
                self._drop(conflict)
                return False
            record = self.task_writer.update_task(patch)
            refreshed = build_sync_task(record, self.tz)
            if refreshed is not None:
                refreshed.project_id = record.project_id or task.project_id
                self.calendar_store.save_event(apply_task(refreshed, event, self.tz))
                self.calendar_store.commit()
        logger.info("Resolved conflict for task %s with %s", conflict.task_id, resolution.value)
        self._drop(conflict)
        return True
