"""Background threads that run one job at a fixed interval."""

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``job`` every ``interval_seconds`` until stopped.

    The first run happens one interval after ``start``. A failing run is
    logged and the schedule continues; the next run starts from scratch.
    """

    def __init__(self, name: str, job: Callable[[], Any], interval_seconds: float):
        self.name = name
        self._job = job
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.failures = 0

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started (every {self._interval}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        logger.info(f"{self.name} stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._job()
            except Exception as e:
                self.failures += 1
                logger.error(f"{self.name} run failed: {e}", exc_info=True)
            self.runs += 1
