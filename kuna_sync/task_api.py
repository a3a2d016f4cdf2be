from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Protocol

import requests

from kuna_sync.errors import TaskAPIError
from kuna_sync.models import Project, TaskAPIConfig, TaskPatch, TaskRecord, serialize_datetime


logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    def list_projects(self) -> list[Project]: ...

    def list_tasks(self, project_id: str) -> list[TaskRecord]: ...


class TaskWriter(Protocol):
    def update_task(self, patch: TaskPatch) -> TaskRecord: ...


class VikunjaClient:
    """Thin client for the parts of the Vikunja REST API the sync needs."""

    def __init__(self, config: TaskAPIConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.token)

    def _endpoint(self, path: str) -> str:
        base = self.config.base_url.rstrip("/")
        if not base.endswith("/api/v1"):
            base = f"{base}/api/v1"
        return f"{base}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.is_configured():
            raise TaskAPIError("Task API config incomplete: base_url/token required.")
        try:
            response = self.session.request(
                method,
                self._endpoint(path),
                headers={
                    "Authorization": f"Bearer {self.config.token}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise TaskAPIError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise TaskAPIError(f"{method} {path} returned invalid JSON") from exc

    def list_projects(self) -> list[Project]:
        payload = self._request("GET", "projects")
        if not isinstance(payload, list):
            raise TaskAPIError("Projects response must be a list.")
        return [Project.from_dict(item) for item in payload if isinstance(item, dict)]

    def list_tasks(self, project_id: str) -> list[TaskRecord]:
        tasks: list[TaskRecord] = []
        page = 1
        per_page = self.config.per_page
        while True:
            payload = self._request(
                "GET",
                f"projects/{project_id}/tasks",
                params={"page": page, "per_page": per_page},
            )
            if not isinstance(payload, list):
                raise TaskAPIError(f"Tasks response for project {project_id} must be a list.")
            for item in payload:
                if not isinstance(item, dict):
                    continue
                record = TaskRecord.from_dict(item)
                if not record.project_id:
                    record.project_id = str(project_id)
                tasks.append(record)
            if len(payload) < per_page:
                break
            page += 1
        logger.debug("Fetched %d tasks for project %s", len(tasks), project_id)
        return tasks

    def get_task(self, task_id: str) -> dict[str, Any]:
        payload = self._request("GET", f"tasks/{task_id}")
        if not isinstance(payload, dict):
            raise TaskAPIError(f"Task {task_id} response must be an object.")
        return payload

    def update_task(self, patch: TaskPatch) -> TaskRecord:
        current = self.get_task(patch.task_id)
        updated = dict(current)
        if patch.title is not None:
            updated["title"] = patch.title
        if patch.notes is not None:
            updated["description"] = patch.notes
        if patch.due_date is not None:
            updated["due_date"] = serialize_datetime(patch.due_date)
        if patch.reminders is not None:
            due = patch.due_date or TaskRecord.from_dict(current).due_date
            if due is None:
                updated["reminders"] = []
            else:
                updated["reminders"] = [
                    {"reminder": serialize_datetime(due + timedelta(seconds=offset))}
                    for offset in patch.reminders
                ]
        payload = self._request("POST", f"tasks/{patch.task_id}", json=updated)
        if not isinstance(payload, dict):
            raise TaskAPIError(f"Task {patch.task_id} update response must be an object.")
        return TaskRecord.from_dict(payload)
