"""Background polling worker.

The health monitor and the stall detector each own one of these: a daemon
thread that runs a cycle function at a fixed interval until stopped.
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PollingWorker:
    """
    Background worker that calls ``cycle`` every ``poll_interval`` seconds.

    Design:
    - One daemon thread per worker
    - Errors escaping a cycle are logged; the loop keeps going
    - stop() wakes the thread immediately instead of waiting out the interval
    """

    def __init__(self, name: str, cycle: Callable[[], object], poll_interval: float):
        self.name = name
        self.cycle = cycle
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop. Starting a running worker is a no-op."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"devfleet-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started (every {self.poll_interval}s)")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.cycle()
            except Exception as e:
                logger.error(f"{self.name} cycle error: {e}", exc_info=True)
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker and wait (bounded) for the thread to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
