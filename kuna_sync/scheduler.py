from __future__ import annotations

import logging
import threading
from typing import Optional

from kuna_sync.config_manager import ConfigManager
from kuna_sync.sync_engine import ReconciliationEngine


MIN_INTERVAL_SECONDS = 30

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background thread that runs a pass at startup, on an interval and on demand."""

    def __init__(self, engine: ReconciliationEngine, config_manager: ConfigManager) -> None:
        self.engine = engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="kuna-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        self.engine.cancel()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _interval(self) -> int:
        return max(MIN_INTERVAL_SECONDS, int(self.config_manager.load().sync.interval_seconds))

    def _run(self, trigger: str) -> None:
        try:
            self.engine.run_pass(trigger=trigger)
        except Exception:
            logger.exception("Sync pass (%s) raised", trigger)

    def _loop(self) -> None:
        self._run("startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self._interval())
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")
