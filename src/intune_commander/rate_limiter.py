"""
Token bucket throttle shared by concurrent fetch workers.

Graph throttles per tenant and per app; a download-all run has several
workers paging at once, so they draw from one bucket instead of each
pacing itself.
"""

import threading
import time
from dataclasses import dataclass


@dataclass
class ThrottleStats:
    """Statistics for monitoring throttle behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    total_wait_time: float = 0.0


class RequestThrottle:
    """
    Thread-safe token bucket.

    - Bucket holds up to ``capacity`` tokens, refilled at ``rate`` per second
    - Each request takes one token, waiting if none is available
    - Waiting stops early when a cancel event is set

    Example:
        throttle = RequestThrottle(requests_per_minute=600)

        if throttle.acquire(cancel=cancel_event):
            make_request()
    """

    def __init__(
        self,
        requests_per_minute: int = 600,
        burst_capacity: int | None = None,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")

        self.rate = requests_per_minute / 60.0
        self.capacity = burst_capacity or max(10, requests_per_minute // 10)

        self._tokens = float(self.capacity)
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

        self.stats = ThrottleStats()

    def _refill(self) -> None:
        """Add tokens for elapsed time. Must hold lock."""
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now

    def acquire(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """
        Take a token, blocking until one is available.

        Returns False on timeout or cancellation, True otherwise.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self.stats.requests_made += 1
                    return True

                wait_time = (1.0 - self._tokens) / self.rate
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait_time = min(wait_time, remaining)

                self.stats.requests_throttled += 1
                self.stats.total_wait_time += wait_time

            if cancel is not None:
                if cancel.wait(wait_time):
                    return False
            else:
                time.sleep(wait_time)

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def get_stats(self) -> dict:
        """Get throttle statistics for monitoring."""
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "available_tokens": round(self.available_tokens, 1),
            "rate_per_minute": round(self.rate * 60, 1),
        }
