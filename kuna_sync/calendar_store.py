from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Protocol

from kuna_sync.errors import AccessDenied, CalendarStoreError, NoWritableSource
from kuna_sync.mapper import is_owned
from kuna_sync.models import AuthorizationStatus, CalendarEvent, CalendarRef, CalendarSource


class CalendarStore(Protocol):
    def authorization_status(self) -> AuthorizationStatus: ...

    def request_access(self) -> bool: ...

    def writable_sources(self) -> list[CalendarSource]: ...

    def ensure_calendar(self, name: str, source: CalendarSource) -> CalendarRef: ...

    def rename_calendar(self, ref: CalendarRef, new_name: str) -> CalendarRef: ...

    def events_owned(self, refs: list[CalendarRef], start: datetime, end: datetime) -> list[CalendarEvent]: ...

    def save_event(self, event: CalendarEvent) -> CalendarEvent: ...

    def remove_event(self, event: CalendarEvent) -> None: ...

    def commit(self) -> None: ...


def ensure_authorized(store: CalendarStore) -> None:
    status = store.authorization_status()
    if status == AuthorizationStatus.AUTHORIZED:
        return
    if status == AuthorizationStatus.NOT_DETERMINED and store.request_access():
        return
    raise AccessDenied()


def first_writable_source(store: CalendarStore) -> CalendarSource:
    sources = store.writable_sources()
    if not sources:
        raise NoWritableSource()
    return sources[0]


def _overlaps(event: CalendarEvent, start: datetime, end: datetime) -> bool:
    if event.start is None:
        return False
    event_end = event.end or event.start
    return event.start < end and event_end > start


class InMemoryCalendarStore:
    """Process-local calendar store.

    Writes are staged until ``commit()``; a failed commit drops the whole batch.
    """

    def __init__(
        self,
        *,
        sources: list[CalendarSource] | None = None,
        authorization: AuthorizationStatus = AuthorizationStatus.AUTHORIZED,
        grant_on_request: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._authorization = authorization
        self._grant_on_request = grant_on_request
        self._sources = list(sources) if sources is not None else [CalendarSource("local", "Local")]
        self._calendars: dict[str, dict[str, str]] = {}
        self._events: dict[str, CalendarEvent] = {}
        self._pending: list[tuple[str, CalendarEvent]] = []
        self.commit_error: Exception | None = None
        self.operations: list[tuple[str, str]] = []

    def authorization_status(self) -> AuthorizationStatus:
        return self._authorization

    def set_authorization(self, status: AuthorizationStatus) -> None:
        self._authorization = status

    def request_access(self) -> bool:
        if self._authorization == AuthorizationStatus.NOT_DETERMINED:
            self._authorization = (
                AuthorizationStatus.AUTHORIZED if self._grant_on_request else AuthorizationStatus.DENIED
            )
        return self._authorization == AuthorizationStatus.AUTHORIZED

    def writable_sources(self) -> list[CalendarSource]:
        return list(self._sources)

    def calendars(self) -> list[CalendarRef]:
        with self._lock:
            return [CalendarRef(name=info["name"], identifier=cid) for cid, info in self._calendars.items()]

    def ensure_calendar(self, name: str, source: CalendarSource) -> CalendarRef:
        with self._lock:
            for calendar_id, info in self._calendars.items():
                if info["name"] == name and info["source_id"] == source.source_id:
                    return CalendarRef(name=name, identifier=calendar_id)
            calendar_id = f"cal-{uuid.uuid4().hex[:12]}"
            self._calendars[calendar_id] = {"name": name, "source_id": source.source_id}
            return CalendarRef(name=name, identifier=calendar_id)

    def rename_calendar(self, ref: CalendarRef, new_name: str) -> CalendarRef:
        with self._lock:
            info = self._calendars.get(ref.identifier)
            if info is None:
                raise CalendarStoreError(f"Calendar not found: {ref.name}")
            info["name"] = new_name
            return CalendarRef(name=new_name, identifier=ref.identifier)

    def events(self, refs: list[CalendarRef], start: datetime, end: datetime) -> list[CalendarEvent]:
        ids = {ref.identifier for ref in refs}
        with self._lock:
            return [
                event.clone()
                for event in sorted(self._events.values(), key=lambda item: item.uid)
                if event.calendar_id in ids and _overlaps(event, start, end)
            ]

    def events_owned(self, refs: list[CalendarRef], start: datetime, end: datetime) -> list[CalendarEvent]:
        return [event for event in self.events(refs, start, end) if is_owned(event)]

    def get_event(self, uid: str) -> CalendarEvent | None:
        with self._lock:
            event = self._events.get(uid)
            return event.clone() if event else None

    def save_event(self, event: CalendarEvent) -> CalendarEvent:
        with self._lock:
            if event.calendar_id not in self._calendars:
                raise CalendarStoreError(f"Calendar not found: {event.calendar_id}")
            if event.start is None or event.end is None:
                raise CalendarStoreError("Event needs both a start and an end.")
            saved = event.clone()
            if not saved.uid:
                saved.uid = uuid.uuid4().hex
                saved.href = f"memory://{saved.calendar_id}/{saved.uid}"
            self._pending.append(("save", saved))
            return saved.clone()

    def remove_event(self, event: CalendarEvent) -> None:
        with self._lock:
            if event.uid not in self._events:
                raise CalendarStoreError(f"Event not found: {event.uid}")
            self._pending.append(("remove", event.clone()))

    def commit(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
            if self.commit_error is not None:
                raise self.commit_error
            now = datetime.now(timezone.utc)
            for action, event in pending:
                if action == "save":
                    event.last_modified = now
                    self._events[event.uid] = event
                else:
                    self._events.pop(event.uid, None)
                self.operations.append((action, event.uid))
