"""Wait for a service to come up."""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class StartupWatcher:
    """Polls ``is_running`` at a fixed interval until running or timeout."""

    def __init__(self, controller, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.controller = controller
        self._sleep = sleep
        self._clock = clock

    def wait_until_running(self, name: str, timeout_s: float = 120.0,
                           interval_s: float = 2.0) -> Optional[float]:
        """Elapsed seconds once running, or None on timeout."""
        logger.info(f"[startup] Waiting up to {timeout_s:.0f}s for {name}")
        started = self._clock()
        while True:
            if self.controller.is_running(name):
                elapsed = self._clock() - started
                logger.info(f"[startup] {name} running after {elapsed:.1f}s")
                return elapsed
            if self._clock() - started >= timeout_s:
                logger.error(f"[startup] {name} not running after {timeout_s:.0f}s")
                return None
            self._sleep(interval_s)
