"""
Daily usage and cost accounting with hard caps.

Counters reset lazily on the first access after UTC midnight; there is no
background timer. `record_usage` only accumulates: enforcement is the job of
`can_make_call`, which the orchestrator always runs before a provider call.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .config import BudgetConfig

# Approximate USD cost per 1M tokens.
COST_PER_MILLION_TOKENS: Dict[str, float] = {
    "gemini-2.5-flash-lite": 0.01,
    "gemini-3-flash-preview": 0.03,
}
DEFAULT_COST_PER_MILLION = 0.01


def estimate_cost(tokens: int, model: str) -> float:
    rate = COST_PER_MILLION_TOKENS.get(model, DEFAULT_COST_PER_MILLION)
    return (tokens / 1_000_000) * rate


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class BudgetStats:
    calls_today: int
    calls_remaining: int
    tokens_today: int
    cost_today: float
    cost_remaining: float


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _start_of_day(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class BudgetTracker:
    def __init__(self, config: BudgetConfig, clock: Callable[[], datetime] = _utc_now):
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self.calls_today = 0
        self.tokens_today = 0
        self.cost_today = 0.0
        self.day_start = _start_of_day(clock())

    def can_make_call(self) -> BudgetCheck:
        with self._lock:
            self._maybe_reset_day()
            if self.calls_today >= self._config.max_calls_per_day:
                return BudgetCheck(
                    allowed=False,
                    reason=f"Daily call limit reached ({self._config.max_calls_per_day} calls/day)",
                )
            if self.cost_today >= self._config.cost_cap_daily:
                return BudgetCheck(
                    allowed=False,
                    reason=f"Daily cost cap reached (${self._config.cost_cap_daily:.2f})",
                )
            return BudgetCheck(allowed=True)

    def record_usage(self, tokens_used: int, cost_usd: float) -> None:
        with self._lock:
            self._maybe_reset_day()
            self.calls_today += 1
            self.tokens_today += tokens_used
            self.cost_today += cost_usd

    def get_stats(self) -> BudgetStats:
        with self._lock:
            self._maybe_reset_day()
            return BudgetStats(
                calls_today=self.calls_today,
                calls_remaining=max(0, self._config.max_calls_per_day - self.calls_today),
                tokens_today=self.tokens_today,
                cost_today=self.cost_today,
                cost_remaining=max(0.0, self._config.cost_cap_daily - self.cost_today),
            )

    def reset(self) -> None:
        with self._lock:
            self._zero()
            self.day_start = _start_of_day(self._clock())

    def _maybe_reset_day(self) -> None:
        current = _start_of_day(self._clock())
        if current > self.day_start:
            self._zero()
            self.day_start = current

    def _zero(self) -> None:
        self.calls_today = 0
        self.tokens_today = 0
        self.cost_today = 0.0
