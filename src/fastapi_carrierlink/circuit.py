"""Per (provider, method) circuit breaker."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CircuitKey:
    provider: str
    method: str


@dataclass
class CircuitState:
    window_size: int
    consecutive_failures: int = 0
    outcomes: deque[bool] = field(default_factory=deque)
    open_until: float | None = None

    def __post_init__(self) -> None:
        self.outcomes = deque(self.outcomes, maxlen=self.window_size)


class CircuitBreaker:
    """Opens after K consecutive failures or a high rolling error rate.

    The window holds the last ``window_size`` call outcomes. Once open,
    calls are rejected until ``open_seconds`` elapse; the next call is
    then allowed through as a trial.
    """

    def __init__(
        self,
        *,
        consecutive_failures: int = 3,
        error_rate_percent: float = 50,
        window_size: int = 20,
        open_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.consecutive_failures = consecutive_failures
        self.error_rate_percent = error_rate_percent
        self.window_size = window_size
        self.open_seconds = open_seconds
        self._clock = clock
        self._states: dict[CircuitKey, CircuitState] = {}

    def state(self, key: CircuitKey) -> CircuitState:
        state = self._states.get(key)
        if state is None:
            state = CircuitState(window_size=self.window_size)
            self._states[key] = state
        return state

    def is_open(self, key: CircuitKey) -> bool:
        state = self.state(key)
        if state.open_until is None:
            return False
        if self._clock() >= state.open_until:
            state.open_until = None
            return False
        return True

    def record_success(self, key: CircuitKey) -> None:
        state = self.state(key)
        state.consecutive_failures = 0
        state.outcomes.append(True)

    def record_failure(self, key: CircuitKey) -> None:
        state = self.state(key)
        state.consecutive_failures += 1
        state.outcomes.append(False)

        should_open = state.consecutive_failures >= self.consecutive_failures
        if not should_open and len(state.outcomes) >= self.window_size:
            failures = sum(1 for ok in state.outcomes if not ok)
            error_rate = failures * 100 / len(state.outcomes)
            should_open = error_rate >= self.error_rate_percent

        if should_open:
            state.open_until = self._clock() + self.open_seconds
