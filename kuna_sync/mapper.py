"""Pure translation between remote tasks and calendar events.

Nothing in this module performs I/O. Every owned event carries two
ownership markers and a content signature:

* ``url``: ``kuna://task/<task id>?project=<project id>``
* notes: a ``KUNA_EVENT: task=<id> project=<id>`` line followed by the
  signature trailer ``-- KunaSig:<16 hex chars>``.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Iterable
from urllib.parse import parse_qs, quote, unquote, urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kuna_sync.models import CalendarEvent, RelativeReminder, SyncTask, TaskPatch, TaskRecord


EVENT_SCHEME = "kuna"
EVENT_HOST_TASK = "task"
NOTES_MARKER = "KUNA_EVENT:"
SIGNATURE_MARKER = "\n\n-- KunaSig:"
TIMED_EVENT_LEAD = timedelta(hours=1)

_NOTES_MARKER_LINE = re.compile(r"^[ \t]*KUNA_EVENT:[^\n]*\n?", re.MULTILINE)


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(str(name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _quote_id(value: str) -> str:
    return quote(str(value), safe="")


def encode_marker(task_id: str, project_id: str) -> str:
    return f"{EVENT_SCHEME}://{EVENT_HOST_TASK}/{_quote_id(task_id)}?project={_quote_id(project_id)}"


def parse_marker(url: str) -> tuple[str, str] | None:
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme != EVENT_SCHEME or parts.netloc != EVENT_HOST_TASK:
        return None
    segments = parts.path.split("/")
    if len(segments) != 2 or segments[0] != "" or not segments[1]:
        return None
    projects = parse_qs(parts.query, keep_blank_values=True).get("project", [])
    if len(projects) != 1 or not projects[0]:
        return None
    return unquote(segments[1]), projects[0]


def notes_marker(task_id: str, project_id: str) -> str:
    return f"{NOTES_MARKER} task={_quote_id(task_id)} project={_quote_id(project_id)}"


def parse_notes_marker(notes: str) -> tuple[str, str] | None:
    if not notes:
        return None
    index = notes.find(NOTES_MARKER)
    if index < 0:
        return None
    line = notes[index + len(NOTES_MARKER) :].split("\n", 1)[0]
    task_id = ""
    project_id = ""
    for token in line.split():
        if token.startswith("task="):
            task_id = unquote(token[len("task=") :])
        elif token.startswith("project="):
            project_id = unquote(token[len("project=") :])
    if not task_id or not project_id:
        return None
    return task_id, project_id


def event_owner(event: CalendarEvent) -> tuple[str, str] | None:
    """Return the ``(task id, project id)`` an event was created for, if any.

    The URL field wins whenever it is set; the notes marker is only consulted
    for events without a URL.
    """
    if event.url:
        return parse_marker(event.url)
    return parse_notes_marker(event.notes)


def is_owned(event: CalendarEvent) -> bool:
    return event_owner(event) is not None


def strip_markers(notes: str) -> str:
    if not notes:
        return ""
    text = notes
    index = text.find(SIGNATURE_MARKER)
    if index >= 0:
        text = text[:index]
    text = _NOTES_MARKER_LINE.sub("", text)
    return text.strip()


def extract_signature(notes: str) -> str | None:
    if not notes:
        return None
    index = notes.find(SIGNATURE_MARKER)
    if index < 0:
        return None
    value = notes[index + len(SIGNATURE_MARKER) :].strip()
    return value.split()[0] if value else None


def compose_notes(notes: str, task_id: str, project_id: str, signature: str) -> str:
    base = strip_markers(notes)
    marker = notes_marker(task_id, project_id)
    body = f"{base}\n\n{marker}" if base else marker
    return f"{body}{SIGNATURE_MARKER}{signature}"


def signature_instant(value: datetime | None, all_day: bool) -> str:
    if value is None:
        return ""
    if all_day:
        return value.date().isoformat()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def make_signature(
    title: str | None,
    start: datetime | None,
    end: datetime | None,
    all_day: bool,
    alarm_offsets: Iterable[int] | None,
    notes: str | None,
) -> str:
    offsets = ",".join(str(x) for x in sorted(int(o) for o in (alarm_offsets or [])))
    parts = [
        title or "",
        signature_instant(start, all_day),
        signature_instant(end, all_day),
        "A1" if all_day else "A0",
        offsets,
        (notes or "").strip(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def signature_for_event(event: CalendarEvent) -> str:
    return make_signature(
        event.title,
        event.start,
        event.end,
        event.all_day,
        event.alarms,
        strip_markers(event.notes),
    )


def _start_of_day(value: datetime, tz: tzinfo) -> datetime:
    local = value.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)


def build_sync_task(record: TaskRecord, tz: tzinfo) -> SyncTask | None:
    """Derive the per-pass task view. Tasks without a due date are not projected."""
    due = record.due_date
    if due is None:
        return None
    is_all_day = due.astimezone(tz) == _start_of_day(due, tz)
    reminders = [
        RelativeReminder(relative_seconds=int((reminder - due).total_seconds()))
        for reminder in record.reminders
    ]
    return SyncTask(
        task_id=record.task_id,
        title=record.title,
        notes=record.description,
        due_date=due,
        project_id=record.project_id,
        is_all_day=is_all_day,
        start_date=record.start_date,
        end_date=record.end_date,
        reminders=reminders,
        updated_at=record.updated,
    )


def event_span(task: SyncTask, tz: tzinfo) -> tuple[datetime, datetime]:
    if task.is_all_day:
        start = _start_of_day(task.due_date, tz)
        end = datetime.combine(start.date() + timedelta(days=1), time.min, tzinfo=tz)
        return start, end
    return task.due_date - TIMED_EVENT_LEAD, task.due_date


def alarm_offsets(task: SyncTask) -> list[int]:
    shift = 0 if task.is_all_day else int(TIMED_EVENT_LEAD.total_seconds())
    return [reminder.relative_seconds + shift for reminder in task.reminders]


def expected_signature(task: SyncTask, tz: tzinfo) -> str:
    start, end = event_span(task, tz)
    return make_signature(task.title, start, end, task.is_all_day, alarm_offsets(task), strip_markers(task.notes))


def apply_task(task: SyncTask, event: CalendarEvent, tz: tzinfo) -> CalendarEvent:
    """Return a copy of ``event`` carrying the task's values; uid and href are kept."""
    start, end = event_span(task, tz)
    signature = expected_signature(task, tz)
    return event.with_updates(
        title=task.title,
        start=start,
        end=end,
        all_day=task.is_all_day,
        alarms=alarm_offsets(task),
        url=encode_marker(task.task_id, task.project_id),
        notes=compose_notes(task.notes, task.task_id, task.project_id, signature),
    )


def new_event(task: SyncTask, calendar_id: str, tz: tzinfo) -> CalendarEvent:
    return apply_task(task, CalendarEvent(calendar_id=calendar_id), tz)


def extract_patch(event: CalendarEvent) -> TaskPatch | None:
    """Turn local edits of an owned event back into a task patch.

    Returns ``None`` for foreign events and for events whose content still
    matches the signature written by the engine.
    """
    owner = event_owner(event)
    if owner is None:
        return None
    if signature_for_event(event) == extract_signature(event.notes):
        return None
    if event.all_day:
        due = event.start
        reminders = list(event.alarms)
    else:
        due = event.end
        lead = int(TIMED_EVENT_LEAD.total_seconds())
        reminders = [offset - lead for offset in event.alarms]
    return TaskPatch(
        task_id=owner[0],
        title=event.title,
        notes=strip_markers(event.notes),
        due_date=due,
        is_all_day=event.all_day,
        reminders=reminders or None,
    )
