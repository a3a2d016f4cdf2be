from __future__ import annotations


class CalendarSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class AccessDenied(CalendarSyncError):
    def __init__(self, message: str = "Calendar access was denied.") -> None:
        super().__init__(message)


class NoWritableSource(CalendarSyncError):
    def __init__(self, message: str = "No writable calendar source available.") -> None:
        super().__init__(message)


class CalendarStoreError(CalendarSyncError):
    pass


class TaskAPIError(CalendarSyncError):
    pass


class RemoteFetchFailed(CalendarSyncError):
    def __init__(self, project_id: str, cause: BaseException | str) -> None:
        self.project_id = project_id
        self.cause = cause
        super().__init__(f"Fetching tasks for project {project_id} failed: {cause}")


class StoreWriteFailed(CalendarSyncError):
    def __init__(self, action: str, task_id: str, cause: BaseException | str) -> None:
        self.action = action
        self.task_id = task_id
        self.cause = cause
        super().__init__(f"Could not {action} event for task {task_id}: {cause}")


class StoreCommitFailed(CalendarSyncError):
    def __init__(self, calendar_name: str, cause: BaseException | str) -> None:
        self.calendar_name = calendar_name
        self.cause = cause
        super().__init__(f"Committing changes to calendar {calendar_name!r} failed: {cause}")


class InvalidPreferences(CalendarSyncError):
    pass


class UnsupportedResolution(CalendarSyncError):
    pass


class TeardownIncomplete(CalendarSyncError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Teardown did not complete.")


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, CalendarSyncError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
