import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fake_task_source import FakeTaskSource

from kuna_sync.calendar_store import InMemoryCalendarStore
from kuna_sync.errors import CalendarStoreError
from kuna_sync.mapper import build_sync_task, event_owner, new_event
from kuna_sync.models import (
    AuthorizationStatus,
    CalendarEvent,
    SyncMode,
    SyncPreferences,
    TaskRecord,
)
from kuna_sync.preferences import PreferencesStore
from kuna_sync.state_store import StateStore
from kuna_sync.sync_engine import LAST_SYNC_META_KEY, ReconciliationEngine
from kuna_sync.topology import TopologyManager


UTC = timezone.utc
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
T = datetime(2026, 3, 3, 9, 0, tzinfo=UTC)


class ReconciliationEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.preferences = PreferencesStore(self.state_store)
        self.store = InMemoryCalendarStore()
        self.source = FakeTaskSource({"7": "Work", "8": "Home"})
        self.topology = TopologyManager(self.store, self.source, self.preferences)
        self.engine = ReconciliationEngine(
            self.store,
            self.source,
            self.preferences,
            state_store=self.state_store,
            clock=lambda: NOW,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _enable_single(self) -> SyncPreferences:
        self.topology.complete_onboarding(SyncMode.SINGLE, [])
        return self.topology.set_enabled(True)

    def _task(self, task_id: str, title: str, project_id: str = "7", due: datetime | None = None) -> TaskRecord:
        return self.source.add_task(
            TaskRecord(task_id=task_id, title=title, project_id=project_id, due_date=due or T + timedelta(hours=1))
        )

    def _events(self, prefs: SyncPreferences) -> list[CalendarEvent]:
        return self.store.events(prefs.referenced_calendars(), NOW - timedelta(days=400), NOW + timedelta(days=800))

    def test_single_mode_creates_event_in_kuna_calendar(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")

        result = self.engine.run_pass()

        self.assertEqual(result.status, "success")
        self.assertEqual(result.created, 1)
        events = self._events(prefs)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.title, "Alpha")
        self.assertFalse(event.all_day)
        self.assertEqual(event.start, T)
        self.assertEqual(event.end, T + timedelta(hours=1))
        self.assertEqual(event.calendar_id, prefs.single_calendar.identifier)
        self.assertEqual(prefs.single_calendar.name, "Kuna")

    def test_second_pass_is_a_no_op(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self._task("2", "Beta", project_id="8")

        self.engine.run_pass()
        before = self._events(prefs)
        operations = list(self.store.operations)
        result = self.engine.run_pass()

        self.assertEqual((result.created, result.updated, result.deleted), (0, 0, 0))
        self.assertEqual(self.store.operations, operations)
        self.assertEqual(self._events(prefs), before)

    def test_changed_task_updates_event_in_place(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self.engine.run_pass()
        original = self._events(prefs)[0]

        self.source.replace_task("1", title="Alpha2")
        result = self.engine.run_pass()

        self.assertEqual(result.updated, 1)
        self.assertEqual(result.created, 0)
        self.assertEqual(result.deleted, 0)
        events = self._events(prefs)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].uid, original.uid)
        self.assertEqual(events[0].title, "Alpha2")
        self.assertEqual(events[0].start, original.start)

    def test_event_is_deleted_when_task_disappears(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self._task("42", "Answer")
        self.engine.run_pass()

        self.source.remove_task("42")
        result = self.engine.run_pass()

        self.assertEqual(result.deleted, 1)
        owners = [event_owner(event) for event in self._events(prefs)]
        self.assertEqual(owners, [("1", "7")])

    def test_done_task_event_is_removed(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self.engine.run_pass()

        self.source.replace_task("1", done=True)
        result = self.engine.run_pass()

        self.assertEqual(result.deleted, 1)
        self.assertEqual(self._events(prefs), [])

    def test_tasks_outside_window_are_ignored(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Far future", due=NOW + timedelta(days=400))
        self._task("2", "Long ago", due=NOW - timedelta(days=90))

        result = self.engine.run_pass()

        self.assertEqual(result.created, 0)
        self.assertEqual(self._events(prefs), [])

    def test_unrelated_events_are_never_touched(self) -> None:
        prefs = self._enable_single()
        dentist = self.store.save_event(
            CalendarEvent(
                calendar_id=prefs.single_calendar.identifier,
                title="Dentist",
                start=T,
                end=T + timedelta(hours=1),
            )
        )
        self.store.commit()

        result = self.engine.run_pass()

        self.assertEqual(result.deleted, 0)
        self.assertEqual(self.store.get_event(dentist.uid).title, "Dentist")

    def test_duplicate_owned_events_are_collapsed(self) -> None:
        prefs = self._enable_single()
        record = self._task("1", "Alpha")
        task = build_sync_task(record, UTC)
        for _ in range(2):
            self.store.save_event(new_event(task, prefs.single_calendar.identifier, UTC))
        self.store.commit()

        result = self.engine.run_pass()

        self.assertEqual(result.deleted, 1)
        self.assertEqual(len(self._events(prefs)), 1)

    def test_failed_project_keeps_its_events(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha", project_id="7")
        self._task("2", "Beta", project_id="8")
        self.engine.run_pass()

        self.source.failing.add("8")
        self.source.replace_task("1", title="Alpha2")
        result = self.engine.run_pass()

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.updated, 1)
        self.assertEqual(result.deleted, 0)
        self.assertTrue(any("project 8" in error for error in result.errors))
        self.assertEqual(sorted(event.title for event in self._events(prefs)), ["Alpha2", "Beta"])
        self.assertEqual(self.engine.sync_errors, result.errors)

    def test_unparseable_task_keeps_its_event(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self.engine.run_pass()

        self.source.replace_task("1", due_date=None, parse_error="invalid due_date: 'soon'")
        result = self.engine.run_pass()

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.deleted, 0)
        self.assertEqual(len(self._events(prefs)), 1)

    def test_failed_write_skips_only_that_task(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self._task("2", "Beta")
        original = self.store.save_event

        def save(event: CalendarEvent) -> CalendarEvent:
            if event.title == "Beta":
                raise CalendarStoreError("quota exceeded")
            return original(event)

        with mock.patch.object(self.store, "save_event", side_effect=save):
            result = self.engine.run_pass()

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.created, 1)
        self.assertEqual([event.title for event in self._events(prefs)], ["Alpha"])
        self.assertEqual(self.engine.sync_errors, ["Could not create event for task 2: quota exceeded"])

        result = self.engine.run_pass()
        self.assertEqual((result.status, result.created), ("success", 1))

    def test_projects_sharing_a_calendar_stay_idempotent(self) -> None:
        shared = self.store.ensure_calendar("Kuna – Inbox", self.store.writable_sources()[0])
        self.preferences.save(
            SyncPreferences(
                enabled=True,
                mode=SyncMode.PER_PROJECT,
                selected_project_ids={"7", "8"},
                project_calendars={"7": shared, "8": shared},
            )
        )
        self._task("1", "Alpha", project_id="7")
        self._task("2", "Beta", project_id="8")

        first = self.engine.run_pass()
        operations = list(self.store.operations)
        second = self.engine.run_pass()

        self.assertEqual((first.created, first.deleted), (2, 0))
        self.assertEqual((second.created, second.updated, second.deleted), (0, 0, 0))
        self.assertEqual(self.store.operations, operations)
        owners = sorted(event_owner(event) for event in self.store.events([shared], NOW, NOW + timedelta(days=30)))
        self.assertEqual(owners, [("1", "7"), ("2", "8")])

    def test_commit_failure_is_reported_and_nothing_is_counted(self) -> None:
        prefs = self._enable_single()
        self._task("1", "Alpha")
        self.store.commit_error = CalendarStoreError("disk full")

        result = self.engine.run_pass()

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.created, 0)
        self.assertTrue(any("disk full" in error for error in result.errors))
        self.assertEqual(self._events(prefs), [])

        self.store.commit_error = None
        result = self.engine.run_pass()
        self.assertEqual(result.status, "success")
        self.assertEqual(result.created, 1)
        self.assertEqual(self.engine.sync_errors, [])

    def test_overlapping_pass_is_skipped(self) -> None:
        self._enable_single()
        self._task("1", "Alpha")
        nested = []
        original = self.source.list_tasks

        def reentrant(project_id: str):
            nested.append(self.engine.run_pass(trigger="manual"))
            return original(project_id)

        self.source.list_tasks = reentrant
        result = self.engine.run_pass()

        self.assertEqual(result.status, "success")
        self.assertTrue(nested)
        self.assertTrue(all(item.status == "skipped" for item in nested))
        self.assertFalse(self.engine.is_syncing)

    def test_cancel_stops_the_pass(self) -> None:
        self._enable_single()
        self._task("1", "Alpha")
        original = self.source.list_tasks

        def cancelling(project_id: str):
            self.engine.cancel()
            return original(project_id)

        self.source.list_tasks = cancelling
        result = self.engine.run_pass()

        self.assertEqual(result.status, "cancelled")
        self.assertEqual(result.created, 0)

    def test_disabled_sync_is_skipped(self) -> None:
        self.topology.complete_onboarding(SyncMode.SINGLE, [])

        result = self.engine.run_pass()

        self.assertEqual(result.status, "skipped")
        self.assertEqual(result.errors, [])
        self.assertEqual(self.source.list_calls, [])

    def test_invalid_preferences_are_treated_as_disabled(self) -> None:
        self.preferences.save(SyncPreferences(enabled=True, mode=SyncMode.PER_PROJECT, selected_project_ids={"7"}))

        result = self.engine.run_pass()

        self.assertEqual(result.status, "skipped")
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(self.source.list_calls, [])

    def test_access_denied_is_an_error_result(self) -> None:
        self._enable_single()
        self.store.set_authorization(AuthorizationStatus.DENIED)

        result = self.engine.run_pass()

        self.assertEqual(result.status, "error")
        self.assertIn("denied", self.engine.sync_errors[0])
        self.assertIsNone(self.engine.last_sync_date)

    def test_pass_is_recorded(self) -> None:
        self._enable_single()
        self._task("1", "Alpha")

        self.engine.resync_now()

        run = self.state_store.recent_sync_runs(limit=1)[0]
        self.assertEqual(run["trigger"], "manual")
        self.assertEqual(run["status"], "success")
        self.assertEqual(run["created"], 1)
        events = self.state_store.recent_audit_events(run_id=run["id"])
        self.assertEqual([event["action"] for event in events], ["create_event"])
        self.assertEqual(events[0]["details"]["task_id"], "1")
        self.assertEqual(self.state_store.recent_audit_events(task_id="1"), events)
        self.assertEqual(self.engine.last_sync_date, NOW)
        self.assertEqual(self.state_store.get_meta(LAST_SYNC_META_KEY), NOW.isoformat())


if __name__ == "__main__":
    unittest.main()
