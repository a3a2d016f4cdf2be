import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from kuna_sync.errors import TaskAPIError
from kuna_sync.models import TaskAPIConfig, TaskPatch
from kuna_sync.task_api import VikunjaClient


def _response(payload) -> mock.Mock:
    response = mock.Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class VikunjaClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.config = TaskAPIConfig(base_url="https://tasks.example.com/", token="tk", per_page=2)
        self.client = VikunjaClient(self.config, session=self.session)

    def test_list_projects_sends_bearer_token(self) -> None:
        self.session.request.return_value = _response([{"id": 7, "title": "Work"}, "junk"])

        projects = self.client.list_projects()

        self.assertEqual([(p.project_id, p.title) for p in projects], [("7", "Work")])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://tasks.example.com/api/v1/projects"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tk")
        self.assertEqual(kwargs["timeout"], 30)

    def test_list_tasks_follows_pages_until_short_page(self) -> None:
        self.session.request.side_effect = [
            _response([{"id": 1, "title": "A"}, {"id": 2, "title": "B", "project_id": 7}]),
            _response([{"id": 3, "title": "C", "due_date": "0001-01-01T00:00:00Z"}]),
        ]

        tasks = self.client.list_tasks("7")

        self.assertEqual([t.task_id for t in tasks], ["1", "2", "3"])
        self.assertTrue(all(t.project_id == "7" for t in tasks))
        self.assertIsNone(tasks[2].due_date)
        pages = [call.kwargs["params"]["page"] for call in self.session.request.call_args_list]
        self.assertEqual(pages, [1, 2])

    def test_transport_errors_become_task_api_errors(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(TaskAPIError):
            self.client.list_projects()

    def test_invalid_json_becomes_task_api_error(self) -> None:
        response = _response(None)
        response.json.side_effect = ValueError("no json")
        self.session.request.return_value = response
        with self.assertRaises(TaskAPIError):
            self.client.list_projects()

    def test_unconfigured_client_does_not_call_out(self) -> None:
        client = VikunjaClient(TaskAPIConfig(), session=self.session)
        with self.assertRaises(TaskAPIError):
            client.list_projects()
        self.session.request.assert_not_called()

    def test_update_task_merges_patch_into_current_task(self) -> None:
        current = {
            "id": 42,
            "title": "Old",
            "description": "keep me",
            "project_id": 7,
            "due_date": "2026-03-10T15:00:00Z",
            "priority": 3,
        }
        self.session.request.side_effect = [
            _response(current),
            _response(dict(current, title="New")),
        ]

        record = self.client.update_task(TaskPatch(task_id="42", title="New", reminders=[-900]))

        self.assertEqual(record.title, "New")
        post_args, post_kwargs = self.session.request.call_args
        self.assertEqual(post_args, ("POST", "https://tasks.example.com/api/v1/tasks/42"))
        body = post_kwargs["json"]
        self.assertEqual(body["title"], "New")
        self.assertEqual(body["description"], "keep me")
        self.assertEqual(body["priority"], 3)
        self.assertEqual(
            body["reminders"],
            [{"reminder": datetime(2026, 3, 10, 14, 45, tzinfo=timezone.utc).isoformat()}],
        )


if __name__ == "__main__":
    unittest.main()
