"""Backoff helpers shared by the router, the adapter and webhook replay."""

from __future__ import annotations

import math
import random
from datetime import timedelta

REPLAY_BACKOFF_CAP_MINUTES = 60


def compute_backoff_seconds(
    attempt: int,
    base_seconds: float,
    jitter_seconds: float = 0,
) -> float:
    """Exponential delay before the next attempt.

    delay = base * 2^(attempt - 1) + random jitter in [0, jitter)
    """
    delay = base_seconds * (2 ** max(attempt - 1, 0))
    if jitter_seconds > 0:
        delay += random.random() * jitter_seconds
    return delay


def compute_backoff_ms(
    attempt: int, base_ms: int, jitter_ms: int = 0
) -> int:
    """Millisecond variant: base * 2^(attempt - 1) + floor(random * jitter)."""
    delay = base_ms * (2 ** max(attempt - 1, 0))
    return delay + math.floor(random.random() * jitter_ms)


def replay_backoff(retry_count: int) -> timedelta:
    """Wait before a buffered webhook is retried: min(2^(n-1), 60) minutes."""
    if retry_count <= 0:
        return timedelta(0)
    minutes = min(2 ** (retry_count - 1), REPLAY_BACKOFF_CAP_MINUTES)
    return timedelta(minutes=minutes)

