from __future__ import annotations

import json
import logging

from kuna_sync.models import SyncPreferences
from kuna_sync.state_store import StateStore


PREFERENCES_KEY = "calendar_sync_prefs"

logger = logging.getLogger(__name__)


class PreferencesStore:
    """Durable home of the single ``SyncPreferences`` record."""

    def __init__(self, state_store: StateStore, key: str = PREFERENCES_KEY) -> None:
        self.state_store = state_store
        self.key = key

    def load(self) -> SyncPreferences:
        raw = self.state_store.get_meta(self.key)
        if not raw:
            return SyncPreferences()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored sync preferences are not valid JSON; using defaults")
            return SyncPreferences()
        return SyncPreferences.from_dict(data)

    def save(self, prefs: SyncPreferences) -> None:
        self.state_store.set_meta(self.key, json.dumps(prefs.to_dict(), ensure_ascii=False))

    def reset(self) -> SyncPreferences:
        prefs = SyncPreferences()
        self.save(prefs)
        return prefs
