from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from kuna_sync.calendar_store import CalendarStore, ensure_authorized, first_writable_source
from kuna_sync.errors import InvalidPreferences, describe_error
from kuna_sync.models import CalendarRef, CalendarSource, SyncMode, SyncPreferences
from kuna_sync.preferences import PreferencesStore
from kuna_sync.task_api import TaskSource


SINGLE_CALENDAR_NAME = "Kuna"
PROJECT_CALENDAR_PREFIX = "Kuna – "

logger = logging.getLogger(__name__)


def project_calendar_name(project_title: str) -> str:
    return f"{PROJECT_CALENDAR_PREFIX}{project_title.strip()}"


class TopologyManager:
    """Makes the calendar store match the chosen sync mode and persists the result.

    Calendars from a previous mode stay referenced in the preferences so the
    teardown flow can still reach them; they are never deleted here.
    """

    def __init__(
        self,
        calendar_store: CalendarStore,
        task_source: TaskSource,
        preferences: PreferencesStore,
    ) -> None:
        self.calendar_store = calendar_store
        self.task_source = task_source
        self.preferences = preferences
        self.last_error: str | None = None

    def begin_onboarding(self) -> None:
        self.last_error = None

    def complete_onboarding(
        self,
        mode: SyncMode | str,
        selected_project_ids: Iterable[str],
    ) -> SyncPreferences:
        current = self.preferences.load()
        try:
            mode = SyncMode(mode)
            selected = {str(pid).strip() for pid in selected_project_ids if str(pid).strip()}
            ensure_authorized(self.calendar_store)
            source = first_writable_source(self.calendar_store)
            if mode == SyncMode.SINGLE:
                ref = self.calendar_store.ensure_calendar(SINGLE_CALENDAR_NAME, source)
                prefs = current.with_updates(
                    mode=mode,
                    selected_project_ids=selected,
                    single_calendar=ref,
                )
            else:
                prefs = current.with_updates(
                    mode=mode,
                    selected_project_ids=selected,
                    project_calendars=self._ensure_project_calendars(selected, current, source),
                )
            if not prefs.is_valid:
                raise InvalidPreferences(f"Onboarding produced an invalid {mode.value} configuration.")
        except Exception as exc:
            self.last_error = describe_error(exc)
            logger.warning("Calendar sync onboarding failed: %s", self.last_error)
            raise

        self.preferences.save(prefs)
        logger.info(
            "Calendar sync onboarding completed: mode=%s projects=%s",
            prefs.mode.value,
            sorted(prefs.selected_project_ids),
        )
        return prefs

    def _ensure_project_calendars(
        self,
        selected: set[str],
        current: SyncPreferences,
        source: CalendarSource,
    ) -> dict[str, CalendarRef]:
        if not selected:
            raise InvalidPreferences("Per-project sync needs at least one selected project.")
        projects = {project.project_id: project for project in self.task_source.list_projects()}
        missing = sorted(selected - projects.keys())
        if missing:
            raise InvalidPreferences(f"Unknown project ids: {', '.join(missing)}")
        titles = {pid: (projects[pid].title or pid).strip() for pid in selected}
        taken = Counter(title.casefold() for title in titles.values())
        calendars = dict(current.project_calendars)
        for project_id in sorted(selected):
            title = titles[project_id]
            if taken[title.casefold()] > 1:
                title = f"{title} ({project_id})"
            name = project_calendar_name(title)
            calendars[project_id] = self.calendar_store.ensure_calendar(name, source)
        return calendars

    def set_enabled(self, enabled: bool) -> SyncPreferences:
        prefs = self.preferences.load()
        if enabled and not prefs.is_valid:
            raise InvalidPreferences("Cannot enable calendar sync before onboarding has completed.")
        prefs = prefs.with_updates(enabled=bool(enabled))
        self.preferences.save(prefs)
        return prefs
