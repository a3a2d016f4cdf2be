import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fake_task_source import FakeTaskSource

from kuna_sync.calendar_store import InMemoryCalendarStore
from kuna_sync.errors import AccessDenied, InvalidPreferences, NoWritableSource
from kuna_sync.mapper import event_owner
from kuna_sync.models import AuthorizationStatus, SyncMode, SyncPreferences, TaskRecord
from kuna_sync.preferences import PreferencesStore
from kuna_sync.state_store import StateStore
from kuna_sync.sync_engine import ReconciliationEngine
from kuna_sync.topology import TopologyManager, project_calendar_name


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TopologyManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.preferences = PreferencesStore(self.state_store)
        self.source = FakeTaskSource({"7": "Work", "8": "Home"})

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _manager(self, store: InMemoryCalendarStore) -> TopologyManager:
        return TopologyManager(store, self.source, self.preferences)

    def test_single_mode_ensures_one_kuna_calendar(self) -> None:
        store = InMemoryCalendarStore()
        manager = self._manager(store)

        first = manager.complete_onboarding(SyncMode.SINGLE, [])
        second = manager.complete_onboarding("single", [])

        self.assertEqual([ref.name for ref in store.calendars()], ["Kuna"])
        self.assertEqual(first.single_calendar, second.single_calendar)
        self.assertTrue(second.is_valid)
        self.assertFalse(second.enabled)
        self.assertEqual(self.preferences.load(), second)

    def test_per_project_mode_creates_named_calendars(self) -> None:
        store = InMemoryCalendarStore()
        manager = self._manager(store)

        with mock.patch.object(self.source, "list_projects", wraps=self.source.list_projects) as list_projects:
            prefs = manager.complete_onboarding(SyncMode.PER_PROJECT, ["7", "8"])

        list_projects.assert_called_once_with()
        self.assertEqual(prefs.project_calendars["7"].name, "Kuna – Work")
        self.assertEqual(prefs.project_calendars["8"].name, "Kuna – Home")
        self.assertEqual(sorted(ref.name for ref in store.calendars()), ["Kuna – Home", "Kuna – Work"])
        self.assertTrue(prefs.is_valid)

    def test_projects_with_same_title_get_separate_calendars(self) -> None:
        store = InMemoryCalendarStore()
        self.source.projects.update({"9": "Inbox", "10": "inbox"})

        prefs = self._manager(store).complete_onboarding(SyncMode.PER_PROJECT, ["7", "9", "10"])

        self.assertEqual(prefs.project_calendars["7"].name, "Kuna – Work")
        self.assertEqual(prefs.project_calendars["9"].name, "Kuna – Inbox (9)")
        self.assertEqual(prefs.project_calendars["10"].name, "Kuna – inbox (10)")
        identifiers = {ref.identifier for ref in prefs.project_calendars.values()}
        self.assertEqual(len(identifiers), 3)

    def test_project_calendar_name_uses_en_dash(self) -> None:
        self.assertEqual(project_calendar_name(" Errands "), "Kuna – Errands")

    def test_unknown_project_is_rejected_and_nothing_saved(self) -> None:
        manager = self._manager(InMemoryCalendarStore())

        with self.assertRaises(InvalidPreferences):
            manager.complete_onboarding(SyncMode.PER_PROJECT, ["7", "99"])

        self.assertIn("99", manager.last_error)
        self.assertEqual(self.preferences.load(), SyncPreferences())

    def test_empty_per_project_selection_is_rejected(self) -> None:
        manager = self._manager(InMemoryCalendarStore())
        with self.assertRaises(InvalidPreferences):
            manager.complete_onboarding(SyncMode.PER_PROJECT, [])

    def test_access_is_requested_when_undetermined(self) -> None:
        store = InMemoryCalendarStore(authorization=AuthorizationStatus.NOT_DETERMINED)
        prefs = self._manager(store).complete_onboarding(SyncMode.SINGLE, [])
        self.assertTrue(prefs.is_valid)
        self.assertEqual(store.authorization_status(), AuthorizationStatus.AUTHORIZED)

    def test_access_denied_aborts_onboarding(self) -> None:
        store = InMemoryCalendarStore(authorization=AuthorizationStatus.NOT_DETERMINED, grant_on_request=False)
        manager = self._manager(store)

        with self.assertRaises(AccessDenied):
            manager.complete_onboarding(SyncMode.SINGLE, [])

        self.assertEqual(store.calendars(), [])
        self.assertIsNotNone(manager.last_error)
        self.assertEqual(self.preferences.load(), SyncPreferences())

        manager.begin_onboarding()
        self.assertIsNone(manager.last_error)

    def test_missing_writable_source_aborts_onboarding(self) -> None:
        manager = self._manager(InMemoryCalendarStore(sources=[]))
        with self.assertRaises(NoWritableSource):
            manager.complete_onboarding(SyncMode.SINGLE, [])

    def test_enable_requires_valid_preferences(self) -> None:
        manager = self._manager(InMemoryCalendarStore())
        with self.assertRaises(InvalidPreferences):
            manager.set_enabled(True)

        manager.complete_onboarding(SyncMode.SINGLE, [])
        self.assertTrue(manager.set_enabled(True).enabled)
        self.assertFalse(manager.set_enabled(False).enabled)

    def test_mode_switch_keeps_previous_calendar_and_events(self) -> None:
        store = InMemoryCalendarStore()
        manager = self._manager(store)
        engine = ReconciliationEngine(store, self.source, self.preferences, clock=lambda: NOW)
        due = NOW + timedelta(days=2)
        self.source.add_task(TaskRecord(task_id="1", title="Alpha", project_id="7", due_date=due))
        self.source.add_task(TaskRecord(task_id="2", title="Beta", project_id="8", due_date=due))

        manager.complete_onboarding(SyncMode.SINGLE, [])
        single = manager.set_enabled(True).single_calendar
        engine.run_pass()

        prefs = manager.complete_onboarding(SyncMode.PER_PROJECT, ["7", "8"])
        self.assertTrue(prefs.enabled)
        self.assertEqual(prefs.single_calendar, single)
        result = engine.run_pass()

        window = (NOW - timedelta(days=30), NOW + timedelta(days=30))
        self.assertEqual(result.created, 2)
        self.assertEqual(len(store.events([single], *window)), 2)
        for project_id, task_id in (("7", "1"), ("8", "2")):
            events = store.events([prefs.project_calendars[project_id]], *window)
            self.assertEqual([event_owner(event) for event in events], [(task_id, project_id)])
        self.assertIn(single, prefs.referenced_calendars())


if __name__ == "__main__":
    unittest.main()
