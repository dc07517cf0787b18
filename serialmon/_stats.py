"""Traffic rate and error statistics for the monitor display"""

import collections
import threading
import time
import typing

HISTORY_LEN = 20


class RateSample(typing.NamedTuple):
    bytes_in_window: int
    window_seconds: float

    @property
    def rate(self) -> float:
        if self.window_seconds <= 0:
            return 0.0
        return self.bytes_in_window / self.window_seconds


class Stats(typing.NamedTuple):
    active_count: int
    error_count: int
    error_rate: float


class RateEstimator:
    """Bytes per second between successive tick() calls"""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending = 0
        self._last_tick = time.monotonic()
        self._rate = 0.0
        self._history: collections.deque[RateSample] = collections.deque(
            maxlen=HISTORY_LEN
        )

    @property
    def rate(self) -> float:
        with self._lock:
            return self._rate

    def samples(self) -> list[RateSample]:
        """Recent ticks, oldest first"""
        with self._lock:
            return list(self._history)

    def add(self, size: int) -> None:
        with self._lock:
            self._pending += size

    def tick(self) -> float:
        now = time.monotonic()
        with self._lock:
            elapsed = now - self._last_tick
            if elapsed > 0:
                sample = RateSample(self._pending, elapsed)
                self._rate = sample.rate
                self._pending = 0
                self._last_tick = now
                self._history.append(sample)
            return self._rate


class StatsAggregator:
    """
    Error counting for the status line. The error rate is
    errors / (active connections + errors), a rough figure rather than a
    per-operation failure rate.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._errors = 0

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._errors

    def record_error(self) -> None:
        with self._lock:
            self._errors += 1

    def snapshot(self, active_count: int) -> Stats:
        errors = self.error_count
        total = active_count + errors
        rate = errors / total if total > 0 else 0.0
        return Stats(active_count, errors, rate)


def format_bytes(size: float | int) -> str:
    units = ("B", "KB", "MB", "GB")
    value, unit = float(size), 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f}".removesuffix(".0") + f" {units[unit]}"
