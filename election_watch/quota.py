"""Call budgeting and retry policy shared by fetchers and the classifier."""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence, Tuple, Type

from .errors import QuotaExceeded

logger = logging.getLogger(__name__)


class QuotaGuard:
    """
    Sliding-window call limit with a bounded backoff schedule.

    Every attempt, including retries, consumes one call from the window.
    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. Daily totals are kept for reporting.
    """

    def __init__(
        self,
        name: str,
        max_calls: int,
        window_seconds: float,
        backoff: Sequence[float] = (1.0,),
        cost_per_unit: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.backoff = list(backoff)
        self.cost_per_unit = cost_per_unit
        self._clock = clock
        self._sleep = sleep
        self._calls = deque()
        self._lock = threading.Lock()
        self._day = None
        self._reset_day()

    def _reset_day(self):
        self._day = datetime.now(timezone.utc).date()
        self._daily_calls = 0
        self._daily_failures = 0
        self._daily_units = 0
        self._daily_cost = 0.0

    def _roll_day(self):
        if datetime.now(timezone.utc).date() != self._day:
            self._reset_day()

    def try_acquire(self) -> bool:
        """Take one call from the window if any remain."""
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.window_seconds:
                self._calls.popleft()
            if len(self._calls) >= self.max_calls:
                return False
            self._calls.append(now)
            self._roll_day()
            self._daily_calls += 1
            return True

    def acquire(self):
        if not self.try_acquire():
            raise QuotaExceeded(
                f"{self.name}: {self.max_calls} calls per {self.window_seconds}s exhausted"
            )

    def remaining(self) -> int:
        with self._lock:
            now = self._clock()
            live = [t for t in self._calls if now - t < self.window_seconds]
            return max(0, self.max_calls - len(live))

    def call(self, fn: Callable, *args, retry_on: Tuple[Type[BaseException], ...] = (), **kwargs):
        """
        Run ``fn`` under the quota, retrying transient failures.

        Raises:
            QuotaExceeded: when the window has no calls left
        """
        attempts = len(self.backoff) + 1
        for attempt in range(attempts):
            self.acquire()
            try:
                return fn(*args, **kwargs)
            except retry_on as e:
                with self._lock:
                    self._daily_failures += 1
                if attempt == attempts - 1:
                    raise
                delay = self.backoff[attempt]
                logger.warning(f"{self.name}: transient failure ({e}), retrying in {delay}s")
                self._sleep(delay)

    def record_usage(self, units: int):
        """Add provider-reported usage (e.g. tokens) to today's cost estimate."""
        with self._lock:
            self._roll_day()
            self._daily_units += units
            self._daily_cost += units * self.cost_per_unit

    def usage(self) -> dict:
        with self._lock:
            self._roll_day()
            return {
                "name": self.name,
                "day": self._day.isoformat(),
                "calls": self._daily_calls,
                "failures": self._daily_failures,
                "units": self._daily_units,
                "estimated_cost": round(self._daily_cost, 4),
            }


def guard_from_config(name: str, settings: Optional[dict], default_max_calls: int,
                      default_window: float = 3600) -> QuotaGuard:
    """Build a guard from a ``quota.<name>`` config section."""
    settings = settings or {}
    return QuotaGuard(
        name=name,
        max_calls=int(settings.get("max_calls", default_max_calls)),
        window_seconds=float(settings.get("window_seconds", default_window)),
        backoff=settings.get("backoff", [1.0]),
        cost_per_unit=float(settings.get("cost_per_unit", 0.0)),
    )
