"""Circuit breaker tests."""

from conftest import FakeClock
from fastapi_carrierlink.circuit import CircuitBreaker, CircuitKey

KEY = CircuitKey("shiprocket", "quote")


def test_opens_after_consecutive_failures() -> None:
    breaker = CircuitBreaker(consecutive_failures=3, clock=FakeClock())

    breaker.record_failure(KEY)
    breaker.record_failure(KEY)
    assert not breaker.is_open(KEY)

    breaker.record_failure(KEY)
    assert breaker.is_open(KEY)


def test_success_resets_consecutive_count() -> None:
    breaker = CircuitBreaker(consecutive_failures=2, clock=FakeClock())

    breaker.record_failure(KEY)
    breaker.record_success(KEY)
    breaker.record_failure(KEY)
    assert not breaker.is_open(KEY)


def test_opens_on_error_rate_over_full_window() -> None:
    breaker = CircuitBreaker(
        consecutive_failures=100,
        error_rate_percent=50,
        window_size=4,
        clock=FakeClock(),
    )

    breaker.record_success(KEY)
    breaker.record_failure(KEY)
    breaker.record_success(KEY)
    assert not breaker.is_open(KEY)

    breaker.record_failure(KEY)
    assert breaker.is_open(KEY)


def test_allows_trial_call_after_open_period() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(
        consecutive_failures=1, open_seconds=30, clock=clock
    )

    breaker.record_failure(KEY)
    assert breaker.is_open(KEY)

    clock.advance(29)
    assert breaker.is_open(KEY)

    clock.advance(1)
    assert not breaker.is_open(KEY)


def test_keys_are_isolated() -> None:
    breaker = CircuitBreaker(consecutive_failures=1, clock=FakeClock())

    breaker.record_failure(KEY)
    assert breaker.is_open(KEY)
    assert not breaker.is_open(CircuitKey("shiprocket", "track"))
    assert not breaker.is_open(CircuitKey("fake", "quote"))
