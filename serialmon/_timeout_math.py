"""Conversions between relative timeouts and monotonic deadlines"""

import threading
import time

TIMEOUT_MAX = threading.TIMEOUT_MAX


def to_deadline(timeout: float | int | None) -> float:
    if timeout is None:
        return TIMEOUT_MAX
    elif timeout <= 0:
        return 0.0
    return min(TIMEOUT_MAX, time.monotonic() + timeout)


def from_deadline(deadline: float | int) -> float:
    if deadline >= TIMEOUT_MAX:
        return TIMEOUT_MAX
    return max(0.0, deadline - time.monotonic())
