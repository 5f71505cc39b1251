"""Single-slot run guard for self-skipping background jobs."""

import logging
import threading

logger = logging.getLogger(__name__)


class RunGuard:
    """Non-blocking mutual exclusion.

    A second caller never waits: ``try_acquire`` returns False and the
    caller is expected to log and skip.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        if not acquired:
            logger.info(f"{self.name} already running, skipping trigger")
        return acquired

    def release(self) -> None:
        self._lock.release()

    @property
    def running(self) -> bool:
        return self._lock.locked()
