"""Backoff helper tests."""

from datetime import timedelta
from unittest.mock import patch

from fastapi_carrierlink.retry import (
    compute_backoff_ms,
    compute_backoff_seconds,
    replay_backoff,
)


class TestComputeBackoff:
    def test_exponential_without_jitter(self) -> None:
        assert compute_backoff_seconds(1, 0.2) == 0.2
        assert compute_backoff_seconds(2, 0.2) == 0.4
        assert compute_backoff_seconds(3, 0.2) == 0.8

    def test_jitter_is_added(self) -> None:
        with patch(
            "fastapi_carrierlink.retry.random.random", return_value=0.5
        ):
            assert compute_backoff_seconds(1, 1.0, 0.2) == 1.1
            assert compute_backoff_ms(2, 200, 100) == 450

    def test_ms_jitter_is_floored(self) -> None:
        with patch(
            "fastapi_carrierlink.retry.random.random", return_value=0.999
        ):
            assert compute_backoff_ms(1, 200, 100) == 299


class TestReplayBackoff:
    def test_first_attempt_is_immediate(self) -> None:
        assert replay_backoff(0) == timedelta(0)
        assert replay_backoff(-1) == timedelta(0)

    def test_doubles_and_caps_at_one_hour(self) -> None:
        assert replay_backoff(1) == timedelta(minutes=1)
        assert replay_backoff(2) == timedelta(minutes=2)
        assert replay_backoff(4) == timedelta(minutes=8)
        assert replay_backoff(7) == timedelta(minutes=60)
        assert replay_backoff(20) == timedelta(minutes=60)
