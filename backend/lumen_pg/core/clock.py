"""
Clock abstraction used for session and transaction deadlines.
"""
import threading
import time


class Clock:
    """Wall clock backed by ``time``. Deadlines are unix seconds as floats."""

    def now_unix(self) -> float:
        return time.time()

    def now_nano(self) -> int:
        return time.time_ns()

    def add_seconds(self, seconds: float, base: float = None) -> float:
        """Return a deadline ``seconds`` after ``base`` (defaults to now)."""
        if base is None:
            base = self.now_unix()
        return base + seconds

    def is_expired(self, deadline: float) -> bool:
        return self.now_unix() >= deadline

    def time_until(self, deadline: float) -> float:
        """Seconds remaining until ``deadline``, never negative."""
        return max(0.0, deadline - self.now_unix())


class FrozenClock(Clock):
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def now_unix(self) -> float:
        with self._lock:
            return self._now

    def now_nano(self) -> int:
        return int(self.now_unix() * 1_000_000_000)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def set(self, now: float) -> None:
        with self._lock:
            self._now = float(now)


system_clock = Clock()
