"""
Background scheduler that triggers periodic sync runs.
"""

from __future__ import annotations
import logging
import threading

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Background thread that asks the orchestrator for periodic runs.

    Behavior:
    - Every interval: stale runs are reset, then each registered server
      gets a partial run (or a full one if it never synced).
    - Servers that still have an active run are skipped for that tick.
    """

    def __init__(self, sync_service, interval_seconds: int = 1800):
        self.sync_service = sync_service
        self.interval_seconds = int(interval_seconds)
        self._thread = None
        self._running = False
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Start the background sync thread."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="polaris-sync-scheduler",
            daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background sync thread."""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("SyncScheduler stopped")

    def tick(self) -> None:
        """Run one scheduling pass."""
        try:
            runs = self.sync_service.sync_periodic()
            if runs:
                logger.info("Scheduled %d sync run(s)", len(runs))
        except Exception:
            logger.exception("Periodic sync failed")

    def _run_loop(self) -> None:
        logger.info("SyncScheduler loop starting (interval=%s)", self.interval_seconds)

        while self._running:
            self.tick()

            total = float(self.interval_seconds or 0)
            slept = 0.0
            while self._running and slept < total:
                to_sleep = min(1.0, total - slept)
                if self._stop_event.wait(to_sleep):
                    break
                slept += to_sleep
