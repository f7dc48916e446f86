from __future__ import annotations

import math
import threading
import time
from typing import Callable

MS_PER_DAY = 24 * 60 * 60 * 1000


def _now_ms() -> float:
    return time.time() * 1000.0


class RateLimiter:
    """
    Token bucket sized to a daily call allowance.

    Capacity is `max_calls_per_day`; the bucket refills continuously so the
    allowance is spread evenly over 24 hours. Denied calls fail immediately.
    """

    def __init__(self, max_calls_per_day: int, clock: Callable[[], float] = _now_ms):
        self._clock = clock
        self._max_tokens = float(max_calls_per_day)
        self._tokens = float(max_calls_per_day)
        self._refill_rate = max_calls_per_day / MS_PER_DAY  # tokens per ms
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def max_tokens(self) -> float:
        return self._max_tokens

    def try_consume(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def remaining(self) -> int:
        with self._lock:
            self._refill()
            return math.floor(self._tokens)

    def reset(self) -> None:
        with self._lock:
            self._tokens = self._max_tokens
            self._last_refill = self._clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._max_tokens, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now
