import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Callable, Optional

from logger_config import setup_logger

logger = setup_logger()

STORED = "stored"
TOO_LARGE = "too_large"
INVALID = "invalid"
ABORTED = "aborted"
STORAGE_FAILURE = "storage_failure"

OUTCOMES = (STORED, TOO_LARGE, INVALID, ABORTED, STORAGE_FAILURE)


class UploadMonitor:
    """Count upload outcomes and alert when storage failures pile up.

    Only ``storage_failure`` outcomes feed the alert window: rejections and
    aborted uploads are client-side problems and say nothing about the
    health of the storage directory.
    """

    def __init__(self, failure_threshold: int, window_seconds: int = 60,
                 alert_handler: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            failure_threshold: Storage failures within the window that trigger an alert
            window_seconds: Length of the sliding window in seconds
            alert_handler: Optional callback for alerts. If None, logs at ERROR level
            clock: Monotonic time source, in seconds
        """
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive")
        if window_seconds <= 0:
            raise ValueError("Window seconds must be positive")

        self._failure_threshold = failure_threshold
        self._window_seconds = window_seconds
        self._alert_handler = alert_handler or self._default_alert_handler
        self._clock = clock
        self._totals = Counter({outcome: 0 for outcome in OUTCOMES})
        self._failure_times = deque()
        self._last_outcome_at: Optional[datetime] = None

    def _default_alert_handler(self, message: str) -> None:
        logger.error(f"[ALERT] {message}")

    def _drop_expired_failures(self, now: float) -> None:
        window_start = now - self._window_seconds
        while self._failure_times and self._failure_times[0] < window_start:
            self._failure_times.popleft()

    def record(self, outcome: str) -> None:
        """Record how one upload request ended."""
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown upload outcome: {outcome}")

        self._totals[outcome] += 1
        self._last_outcome_at = datetime.now(timezone.utc)
        now = self._clock()
        self._drop_expired_failures(now)

        if outcome != STORAGE_FAILURE:
            return

        self._failure_times.append(now)
        # Fires once per burst; re-arms after the window drains below the threshold
        if len(self._failure_times) == self._failure_threshold:
            self._alert_handler(
                f"{self._failure_threshold} storage failures within {self._window_seconds}s "
                f"(stored: {self._totals[STORED]}, storage failures: {self._totals[STORAGE_FAILURE]})"
            )

    @property
    def failures_in_window(self) -> int:
        self._drop_expired_failures(self._clock())
        return len(self._failure_times)

    @property
    def stats(self) -> dict:
        return {
            'totals': dict(self._totals),
            'storage_failures_in_window': self.failures_in_window,
            'window_seconds': self._window_seconds,
            'last_outcome_at': self._last_outcome_at.isoformat() if self._last_outcome_at else None,
        }
