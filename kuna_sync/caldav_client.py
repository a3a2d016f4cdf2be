from __future__ import annotations

import hashlib
import re
import uuid
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

import caldav
from caldav.elements import dav
from caldav.lib import error as caldav_error
from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from kuna_sync.errors import CalendarStoreError
from kuna_sync.mapper import is_owned
from kuna_sync.models import (
    AuthorizationStatus,
    CalDAVConfig,
    CalendarEvent,
    CalendarRef,
    CalendarSource,
)


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _coerce_datetime(value: Any, tz: tzinfo) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tz)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _extract_uid_from_raw_ical(raw_data: Any) -> str:
    try:
        raw_ical = _decode_raw_ical(raw_data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            return ""
        return str(vevent.get("UID", "")).strip()
    except ValueError:
        return ""


def _alarm_offsets(vevent: ICEvent) -> list[int]:
    offsets: list[int] = []
    for component in vevent.subcomponents:
        if component.name != "VALARM" or component.get("TRIGGER") is None:
            continue
        trigger = component.decoded("TRIGGER")
        if isinstance(trigger, timedelta):
            offsets.append(int(trigger.total_seconds()))
    return offsets


class CalDAVService:
    """Calendar store backed by a CalDAV principal.

    CalDAV writes are applied per request, so ``commit()`` has nothing to flush.
    """

    def __init__(self, config: CalDAVConfig, tz: tzinfo = timezone.utc) -> None:
        self.config = config
        self.tz = tz
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}
        self._authorization = AuthorizationStatus.NOT_DETERMINED

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise CalendarStoreError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
            timeout=self.config.timeout_seconds,
        )
        self._principal = self._client.principal()
        self._authorization = AuthorizationStatus.AUTHORIZED

    def authorization_status(self) -> AuthorizationStatus:
        return self._authorization

    def request_access(self) -> bool:
        try:
            self._connect()
        except caldav_error.AuthorizationError:
            self._authorization = AuthorizationStatus.DENIED
            return False
        except (caldav_error.DAVError, OSError) as exc:
            raise CalendarStoreError(f"Connecting to CalDAV failed: {exc}") from exc
        return True

    def writable_sources(self) -> list[CalendarSource]:
        self._connect()
        return [CalendarSource(source_id=str(self._principal.url), title=self.config.username)]

    def _list_calendars(self) -> list[tuple[str, str, Any]]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[tuple[str, str, Any]] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append((calendar_id, name, calendar))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        wanted = _normalize_calendar_id(calendar_id)
        for cid, _name, calendar in self._list_calendars():
            if _normalize_calendar_id(cid) == wanted:
                return calendar
        raise CalendarStoreError(f"Calendar not found: {calendar_id}")

    def ensure_calendar(self, name: str, source: CalendarSource) -> CalendarRef:
        wanted = _normalize_calendar_name(name)
        same_name = [(cid, cname) for cid, cname, _ in self._list_calendars() if _normalize_calendar_name(cname) == wanted]
        if same_name:
            same_name.sort()
            calendar_id, calendar_name = same_name[0]
            return CalendarRef(name=calendar_name, identifier=calendar_id)
        try:
            calendar = self._principal.make_calendar(name=name)
        except caldav_error.DAVError as exc:
            raise CalendarStoreError(f"Creating calendar {name!r} failed: {exc}") from exc
        created_id = str(calendar.url)
        self._calendar_cache[created_id] = calendar
        return CalendarRef(name=name, identifier=created_id)

    def rename_calendar(self, ref: CalendarRef, new_name: str) -> CalendarRef:
        calendar = self._get_calendar(ref.identifier)
        try:
            calendar.set_properties([dav.DisplayName(new_name)])
        except caldav_error.DAVError as exc:
            raise CalendarStoreError(f"Renaming calendar {ref.name!r} failed: {exc}") from exc
        return CalendarRef(name=new_name, identifier=ref.identifier)

    def events_owned(self, refs: list[CalendarRef], start: datetime, end: datetime) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        for ref in refs:
            calendar = self._get_calendar(ref.identifier)
            for resource in calendar.search(start=start, end=end, event=True, expand=False):
                event = self._parse_resource(ref.identifier, resource)
                if event.uid and is_owned(event):
                    events.append(event)
        return events

    def _parse_resource(self, calendar_id: str, resource: Any) -> CalendarEvent:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise CalendarStoreError("VEVENT missing in calendar resource.")

        dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
        dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        start = _coerce_datetime(dtstart_raw, self.tz)
        end = _coerce_datetime(dtend_raw, self.tz)
        if start is not None and end is None:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
        last_modified_raw = vevent.decoded("LAST-MODIFIED") if vevent.get("LAST-MODIFIED") is not None else None
        return CalendarEvent(
            calendar_id=calendar_id,
            uid=str(vevent.get("UID", "")).strip(),
            title=str(vevent.get("SUMMARY", "")),
            notes=str(vevent.get("DESCRIPTION", "")),
            start=start,
            end=end,
            all_day=all_day,
            url=str(vevent.get("URL", "") or "").strip(),
            alarms=_alarm_offsets(vevent),
            href=str(getattr(resource, "url", "") or ""),
            etag=_data_hash(raw_ical),
            last_modified=_coerce_datetime(last_modified_raw, timezone.utc),
        )

    def _build_ical(self, event: CalendarEvent) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//Kuna//Calendar Sync//EN")
        calendar_obj.add("VERSION", "2.0")
        now = datetime.now(timezone.utc)
        vevent = ICEvent()
        vevent.add("UID", event.uid)
        vevent.add("DTSTAMP", now)
        vevent.add("LAST-MODIFIED", now)
        vevent.add("SUMMARY", event.title or "")
        vevent.add("DESCRIPTION", event.notes or "")
        if event.url:
            vevent.add("URL", event.url)
        if event.start is not None:
            vevent.add("DTSTART", event.start.astimezone(self.tz).date() if event.all_day else event.start)
        if event.end is not None:
            vevent.add("DTEND", event.end.astimezone(self.tz).date() if event.all_day else event.end)
        for offset in event.alarms:
            alarm = ICAlarm()
            alarm.add("ACTION", "DISPLAY")
            alarm.add("DESCRIPTION", event.title or "Reminder")
            alarm.add("TRIGGER", timedelta(seconds=offset))
            vevent.add_component(alarm)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def save_event(self, event: CalendarEvent) -> CalendarEvent:
        calendar = self._get_calendar(event.calendar_id)
        if not event.uid:
            # A freshly minted uid cannot exist on the server yet.
            event = event.with_updates(uid=str(uuid.uuid4()))
            return self._parse_resource(event.calendar_id, calendar.save_event(self._build_ical(event)))
        raw_ical = self._build_ical(event)

        resource = None
        if event.href:
            try:
                resource = calendar.event_by_url(event.href)
                resource.data = raw_ical
                resource.save()
            except caldav_error.DAVError:
                resource = None
        if resource is None:
            existing = self._find_resource_by_uid(calendar, event.uid)
            if existing is not None:
                existing.data = raw_ical
                existing.save()
                resource = existing
        if resource is None:
            resource = calendar.save_event(raw_ical)
        return self._parse_resource(event.calendar_id, resource)

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
            if isinstance(resource, list):
                resource = resource[0] if resource else None
            if resource is not None:
                return resource
        except caldav_error.NotFoundError:
            pass

        for resource in calendar.events():
            if _extract_uid_from_raw_ical(getattr(resource, "data", "")) == uid:
                return resource
        return None

    def remove_event(self, event: CalendarEvent) -> None:
        calendar = self._get_calendar(event.calendar_id)
        resource = None
        if event.href:
            try:
                resource = calendar.event_by_url(event.href)
            except caldav_error.DAVError:
                resource = None
        if resource is None:
            resource = self._find_resource_by_uid(calendar, event.uid)
        if resource is None:
            raise CalendarStoreError(f"Event not found: {event.uid}")
        resource.delete()

    def commit(self) -> None:
        return None
