from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


PREFERENCES_VERSION = 1
VIKUNJA_NULL_DATE_PREFIX = "0001-01-01"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if not text or text.startswith(VIKUNJA_NULL_DATE_PREFIX):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class TaskAPIConfig:
    base_url: str = ""
    token: str = ""
    timeout_seconds: int = 30
    per_page: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TaskAPIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            token=str(data.get("token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            per_page=max(1, int(data.get("per_page", 50))),
        )


@dataclass
class SyncConfig:
    timezone: str = "UTC"
    window_back_days: int = 56
    window_forward_days: int = 365
    interval_seconds: int = 300
    fetch_workers: int = 4
    history_runs: int = 500
    store: str = "caldav"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        store = str(data.get("store", "caldav")).strip().lower()
        if store not in {"caldav", "memory"}:
            store = "caldav"
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            window_back_days=max(1, int(data.get("window_back_days", 56))),
            window_forward_days=max(1, int(data.get("window_forward_days", 365))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            fetch_workers=max(1, int(data.get("fetch_workers", 4))),
            history_runs=max(1, int(data.get("history_runs", 500))),
            store=store,
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    task_api: TaskAPIConfig = field(default_factory=TaskAPIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            task_api=TaskAPIConfig.from_dict(data.get("task_api")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


class SyncMode(str, Enum):
    SINGLE = "single"
    PER_PROJECT = "perProject"


class DisableDisposition(str, Enum):
    KEEP_EVERYTHING = "keepEverything"
    REMOVE_KUNA_EVENTS = "removeKunaEvents"
    ARCHIVE_CALENDARS = "archiveCalendars"


class ConflictType(str, Enum):
    TITLE = "title"
    DESCRIPTION = "description"
    START_DATE = "start_date"
    END_DATE = "end_date"
    REMINDERS = "reminders"


class ConflictResolution(str, Enum):
    PREFER_TASK = "preferTask"
    PREFER_EVENT = "preferEvent"


class AuthorizationStatus(str, Enum):
    NOT_DETERMINED = "notDetermined"
    AUTHORIZED = "authorized"
    DENIED = "denied"


@dataclass(frozen=True)
class CalendarRef:
    name: str
    identifier: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "identifier": self.identifier}

    @classmethod
    def from_dict(cls, data: Any) -> "CalendarRef | None":
        if not isinstance(data, dict):
            return None
        identifier = str(data.get("identifier", "") or "").strip()
        if not identifier:
            return None
        return cls(name=str(data.get("name", "") or ""), identifier=identifier)


@dataclass(frozen=True)
class CalendarSource:
    source_id: str
    title: str = ""


@dataclass
class SyncPreferences:
    """Desired sync topology. Replaced wholesale, never patched in place by the engine."""

    enabled: bool = False
    mode: SyncMode = SyncMode.SINGLE
    selected_project_ids: set[str] = field(default_factory=set)
    single_calendar: CalendarRef | None = None
    project_calendars: dict[str, CalendarRef] = field(default_factory=dict)
    version: int = PREFERENCES_VERSION

    @property
    def is_valid(self) -> bool:
        if self.mode == SyncMode.SINGLE:
            return self.single_calendar is not None
        if not self.selected_project_ids:
            return False
        return all(pid in self.project_calendars for pid in self.selected_project_ids)

    @property
    def is_active(self) -> bool:
        return self.enabled and self.is_valid

    def referenced_calendars(self) -> list[CalendarRef]:
        refs: list[CalendarRef] = []
        if self.single_calendar is not None:
            refs.append(self.single_calendar)
        for project_id in sorted(self.project_calendars):
            ref = self.project_calendars[project_id]
            if ref not in refs:
                refs.append(ref)
        return refs

    def with_updates(self, **kwargs: Any) -> "SyncPreferences":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "enabled": self.enabled,
            "mode": self.mode.value,
            "selected_project_ids": sorted(self.selected_project_ids),
            "single_calendar": self.single_calendar.to_dict() if self.single_calendar else None,
            "project_calendars": {pid: ref.to_dict() for pid, ref in sorted(self.project_calendars.items())},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SyncPreferences":
        if not isinstance(data, dict):
            return cls()
        data = _migrate_preferences(data)
        try:
            mode = SyncMode(str(data.get("mode", SyncMode.SINGLE.value)))
        except ValueError:
            return cls()
        raw_selected = data.get("selected_project_ids") or []
        if not isinstance(raw_selected, list):
            raw_selected = []
        raw_calendars = data.get("project_calendars") or {}
        if not isinstance(raw_calendars, dict):
            raw_calendars = {}
        project_calendars: dict[str, CalendarRef] = {}
        for key, value in raw_calendars.items():
            ref = CalendarRef.from_dict(value)
            if ref is not None and str(key).strip():
                project_calendars[str(key).strip()] = ref
        return cls(
            enabled=bool(data.get("enabled", False)),
            mode=mode,
            selected_project_ids={str(x).strip() for x in raw_selected if str(x).strip()},
            single_calendar=CalendarRef.from_dict(data.get("single_calendar")),
            project_calendars=project_calendars,
            version=PREFERENCES_VERSION,
        )


def _migrate_preferences(data: dict[str, Any]) -> dict[str, Any]:
    migrated = dict(data)
    version = migrated.get("version", 0)
    if not isinstance(version, int):
        version = 0
    if version < 1:
        # Unversioned records stored the project selection under "projects".
        if "selected_project_ids" not in migrated and isinstance(migrated.get("projects"), list):
            migrated["selected_project_ids"] = migrated["projects"]
    migrated["version"] = PREFERENCES_VERSION
    return migrated


@dataclass
class Project:
    project_id: str
    title: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            project_id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "") or "").strip(),
            description=str(data.get("description", "") or ""),
        )


@dataclass
class TaskRecord:
    task_id: str
    title: str
    project_id: str
    description: str = ""
    due_date: datetime | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    reminders: list[datetime] = field(default_factory=list)
    done: bool = False
    updated: datetime | None = None
    parse_error: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        errors: list[str] = []

        def _date(name: str, raw: Any) -> datetime | None:
            try:
                return parse_iso_datetime(raw)
            except (TypeError, ValueError):
                errors.append(f"invalid {name}: {raw!r}")
                return None

        reminders: list[datetime] = []
        for item in data.get("reminders") or []:
            raw = item.get("reminder") if isinstance(item, dict) else item
            parsed = _date("reminder", raw)
            if parsed is not None:
                reminders.append(parsed)
        return cls(
            task_id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "") or ""),
            project_id=str(data.get("project_id", "") or "").strip(),
            description=str(data.get("description", "") or ""),
            due_date=_date("due_date", data.get("due_date")),
            start_date=_date("start_date", data.get("start_date")),
            end_date=_date("end_date", data.get("end_date")),
            reminders=reminders,
            done=bool(data.get("done", False)),
            updated=_date("updated", data.get("updated")),
            parse_error="; ".join(errors),
        )


@dataclass(frozen=True)
class RelativeReminder:
    relative_seconds: int


@dataclass
class SyncTask:
    task_id: str
    title: str
    notes: str
    due_date: datetime
    project_id: str
    is_all_day: bool = False
    start_date: datetime | None = None
    end_date: datetime | None = None
    reminders: list[RelativeReminder] = field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.task_id, self.project_id)


@dataclass
class CalendarEvent:
    calendar_id: str
    uid: str = ""
    title: str = ""
    notes: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    url: str = ""
    alarms: list[int] = field(default_factory=list)
    href: str = ""
    etag: str = ""
    last_modified: datetime | None = None

    def clone(self) -> "CalendarEvent":
        return replace(self, alarms=list(self.alarms))

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class TaskPatch:
    task_id: str
    title: str | None = None
    notes: str | None = None
    due_date: datetime | None = None
    is_all_day: bool | None = None
    reminders: list[int] | None = None


@dataclass
class SyncConflict:
    task_id: str
    project_id: str
    task_title: str
    task_last_modified: datetime | None
    event_last_modified: datetime | None
    conflict_type: ConflictType

    @property
    def key(self) -> tuple[str, str]:
        return (self.task_id, self.project_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "project_id": self.project_id,
            "task_title": self.task_title,
            "task_last_modified": serialize_datetime(self.task_last_modified),
            "event_last_modified": serialize_datetime(self.event_last_modified),
            "conflict_type": self.conflict_type.value,
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "changes_applied": self.changes_applied,
            "errors": list(self.errors),
            "run_at": serialize_datetime(self.run_at),
        }


def sync_window(now: datetime, back_days: int, forward_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=max(1, back_days)), now_utc + timedelta(days=max(1, forward_days))
