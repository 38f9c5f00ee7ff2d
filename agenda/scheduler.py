from __future__ import annotations

import logging
import threading
from typing import Optional

from agenda.service import ScheduleService

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, service: ScheduleService, interval_seconds: int = 300) -> None:
        self.service = service
        self.interval_seconds = max(30, int(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        if self.service.sync_engine is None:
            logger.info("Remote calendar not configured; background sync disabled")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="agenda-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        # Run one sync at startup so state is initialized quickly.
        self._run_sync("startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self.interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run_sync("manual" if manual else "scheduled")

    def _run_sync(self, trigger: str) -> None:
        try:
            self.service.run_sync(trigger=trigger)
        except Exception:
            # The failed run is already in the history; keep the loop alive.
            logger.exception("Background sync (%s) crashed", trigger)
