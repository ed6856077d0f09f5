"""Tests for cry_analysis.prediction.circuit_breaker module."""

import threading

import pytest

from cry_analysis.prediction.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        failure_threshold=3, success_threshold=2, cooldown_seconds=60.0, clock=clock
    )


def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.failure_threshold):
        assert breaker.allow()
        breaker.on_failure()


class TestClosedState:
    """Tests for the CLOSED state."""

    def test_starts_closed_and_allows(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow()

    def test_opens_after_exactly_threshold_failures(self, breaker):
        breaker.on_failure()
        breaker.on_failure()
        assert breaker.state is CircuitState.CLOSED

        breaker.on_failure()
        assert breaker.state is CircuitState.OPEN

    def test_success_resets_failure_count(self, breaker):
        breaker.on_failure()
        breaker.on_failure()
        breaker.on_success()
        assert breaker.failure_count == 0

        breaker.on_failure()
        breaker.on_failure()
        assert breaker.state is CircuitState.CLOSED

    def test_rejects_invalid_thresholds(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestOpenState:
    """Tests for the OPEN state and cooldown."""

    def test_open_sets_opened_until(self, breaker, clock):
        _trip(breaker)
        assert breaker.opened_until == clock.now + 60.0
        assert breaker.failure_count == 0

    def test_denies_before_cooldown(self, breaker, clock):
        _trip(breaker)
        clock.advance(59.9)
        assert not breaker.allow()
        assert breaker.state is CircuitState.OPEN

    def test_first_allow_at_cooldown_moves_to_half_open(self, breaker, clock):
        _trip(breaker)
        clock.advance(60.0)
        assert breaker.allow()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_elapsed_cooldown_without_call_stays_open(self, breaker, clock):
        _trip(breaker)
        clock.advance(120.0)
        assert breaker.state is CircuitState.OPEN
        assert not breaker.is_rejecting()

    def test_is_rejecting_has_no_side_effects(self, breaker, clock):
        _trip(breaker)
        assert breaker.is_rejecting()
        clock.advance(60.0)
        assert not breaker.is_rejecting()
        assert breaker.state is CircuitState.OPEN

    def test_late_results_while_open_are_ignored(self, breaker, clock):
        _trip(breaker)
        opened_until = breaker.opened_until
        breaker.on_failure()
        breaker.on_success()
        assert breaker.state is CircuitState.OPEN
        assert breaker.opened_until == opened_until

    def test_seconds_until_trial(self, breaker, clock):
        assert breaker.seconds_until_trial() == 0.0
        _trip(breaker)
        clock.advance(45.0)
        assert breaker.seconds_until_trial() == pytest.approx(15.0)


class TestHalfOpenState:
    """Tests for HALF_OPEN trial calls."""

    def _half_open(self, breaker, clock):
        _trip(breaker)
        clock.advance(60.0)
        assert breaker.allow()

    def test_closes_after_success_threshold(self, breaker, clock):
        self._half_open(breaker, clock)
        breaker.on_success()
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow()
        breaker.on_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.opened_until is None

    def test_single_failure_reopens(self, breaker, clock):
        self._half_open(breaker, clock)
        breaker.on_success()
        breaker.on_failure()
        assert breaker.state is CircuitState.OPEN
        assert breaker.opened_until == clock.now + 60.0
        assert not breaker.allow()


class TestSnapshotAndConcurrency:
    """Tests for status snapshots and concurrent mutation."""

    def test_snapshot_contents(self, breaker, clock):
        _trip(breaker)
        clock.advance(10.0)
        snap = breaker.snapshot()
        assert snap["state"] == "OPEN"
        assert snap["failure_threshold"] == 3
        assert snap["opened_until"] == breaker.opened_until
        assert snap["seconds_until_trial"] == pytest.approx(50.0)

    def test_concurrent_failures_open_exactly_once(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=50, cooldown_seconds=60.0, clock=clock
        )

        def hammer() -> None:
            for _ in range(10):
                breaker.on_failure()

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert breaker.state is CircuitState.OPEN
        assert breaker.failure_count == 0
