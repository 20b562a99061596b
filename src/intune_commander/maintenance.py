"""
Periodic removal of expired cache entries.
"""

import threading
from datetime import timedelta
from typing import Any

import structlog

from intune_commander.cache import CacheStore
from intune_commander.errors import CacheError

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = timedelta(minutes=30)


class CacheJanitor:
    """
    Sweeps expired entries out of a cache store on a fixed interval.

    The sweep runs on a daemon thread that waits on an event, so ``stop()``
    returns promptly instead of sleeping out the interval.

    Example:
        with CacheJanitor(store, interval=timedelta(minutes=30)):
            run_application()
    """

    def __init__(
        self,
        store: CacheStore,
        interval: timedelta = DEFAULT_INTERVAL,
        sweep_on_start: bool = True,
    ):
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")

        self.store = store
        self.interval = interval
        self.sweep_on_start = sweep_on_start

        self.sweeps = 0
        self.removed = 0

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._log = logger.bind(store=str(store.db_path), interval_seconds=interval.total_seconds())

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cache-janitor", daemon=True)
        self._thread.start()
        self._log.debug("Cache janitor started")

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._log.debug("Cache janitor stopped", sweeps=self.sweeps, removed=self.removed)

    def sweep(self) -> int:
        """Run one cleanup pass now. Store failures are logged, not raised."""
        try:
            removed = self.store.cleanup_expired()
        except CacheError as e:
            self._log.warning("Cache cleanup failed", error=str(e))
            return 0
        self.sweeps += 1
        self.removed += removed
        return removed

    def _run(self) -> None:
        if self.sweep_on_start:
            self.sweep()
        while not self._stop.wait(self.interval.total_seconds()):
            self.sweep()

    def __enter__(self) -> "CacheJanitor":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
