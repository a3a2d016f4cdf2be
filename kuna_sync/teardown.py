from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from kuna_sync.calendar_store import CalendarStore, ensure_authorized
from kuna_sync.errors import TeardownIncomplete, describe_error
from kuna_sync.mapper import event_owner
from kuna_sync.models import CalendarRef, DisableDisposition
from kuna_sync.preferences import PreferencesStore


TEARDOWN_WINDOW = timedelta(days=5 * 365)
ARCHIVE_SUFFIX = " (Archived)"

logger = logging.getLogger(__name__)


def archived_name(name: str) -> str:
    return f"{name}{ARCHIVE_SUFFIX}"


@dataclass
class TeardownReport:
    disposition: DisableDisposition
    removed: int = 0
    archived: list[CalendarRef] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "disposition": self.disposition.value,
            "removed": self.removed,
            "archived": [ref.to_dict() for ref in self.archived],
            "errors": list(self.errors),
        }


class TeardownFlow:
    """Turns sync off and cleans up engine-owned calendar artifacts.

    Preferences are always reset, even when some cleanup steps failed; the
    failures are raised afterwards as one ``TeardownIncomplete``.
    """

    def __init__(
        self,
        calendar_store: CalendarStore,
        preferences: PreferencesStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.calendar_store = calendar_store
        self.preferences = preferences
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def disable(self, disposition: DisableDisposition | str) -> TeardownReport:
        disposition = DisableDisposition(disposition)
        report = TeardownReport(disposition=disposition)
        refs = self.preferences.load().referenced_calendars()

        if disposition != DisableDisposition.KEEP_EVERYTHING and refs:
            try:
                ensure_authorized(self.calendar_store)
            except Exception as exc:
                report.errors.append(describe_error(exc))
            else:
                if disposition == DisableDisposition.REMOVE_KUNA_EVENTS:
                    self._remove_events(refs, report)
                else:
                    self._archive_calendars(refs, report)

        self.preferences.reset()
        logger.info(
            "Calendar sync disabled (%s): removed=%d archived=%d errors=%d",
            disposition.value,
            report.removed,
            len(report.archived),
            len(report.errors),
        )
        if report.errors:
            raise TeardownIncomplete(report.errors)
        return report

    def _remove_events(self, refs: list[CalendarRef], report: TeardownReport) -> None:
        now = self.clock()
        for ref in refs:
            try:
                events = self.calendar_store.events_owned([ref], now - TEARDOWN_WINDOW, now + TEARDOWN_WINDOW)
            except Exception as exc:
                report.errors.append(f"Reading calendar {ref.name!r} failed: {describe_error(exc)}")
                continue
            removed = 0
            for event in events:
                if event_owner(event) is None:
                    continue
                try:
                    self.calendar_store.remove_event(event)
                    removed += 1
                except Exception as exc:
                    report.errors.append(f"Removing event {event.uid} failed: {describe_error(exc)}")
            try:
                self.calendar_store.commit()
            except Exception as exc:
                report.errors.append(f"Committing removals in {ref.name!r} failed: {describe_error(exc)}")
                continue
            report.removed += removed

    def _archive_calendars(self, refs: list[CalendarRef], report: TeardownReport) -> None:
        for ref in refs:
            if ref.name.endswith(ARCHIVE_SUFFIX):
                continue
            try:
                report.archived.append(self.calendar_store.rename_calendar(ref, archived_name(ref.name)))
            except Exception as exc:
                report.errors.append(f"Archiving calendar {ref.name!r} failed: {describe_error(exc)}")
