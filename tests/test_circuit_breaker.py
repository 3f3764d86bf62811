"""Tests for the AI circuit breaker."""

import asyncio

import pytest

from mailpilot.core.circuit_breaker import CircuitBreaker
from mailpilot.core.errors import CircuitOpenError


class MonotonicClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def mono() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def breaker(mono) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, window_seconds=60, cooldown_seconds=30, clock=mono)


async def _fail() -> None:
    raise RuntimeError("upstream unavailable")


async def _ok() -> str:
    return "ok"


def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestTransitions:
    def test_starts_closed(self, breaker):
        assert breaker.state == "closed"
        assert breaker.allow_request() is True
        assert breaker.retry_after() == 0.0

    def test_opens_after_threshold_failures(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == "closed"

        breaker.record_failure()
        assert breaker.state == "open"
        assert breaker.allow_request() is False
        assert breaker.retry_after() == 30.0

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == "closed"

    def test_failures_outside_window_do_not_count(self, breaker, mono):
        breaker.record_failure()
        breaker.record_failure()
        mono.now += 61
        breaker.record_failure()
        assert breaker.state == "closed"

    def test_half_open_after_cooldown(self, breaker, mono):
        _trip(breaker)
        mono.now += 29.9
        assert breaker.state == "open"
        mono.now += 0.1
        assert breaker.state == "half_open"

    def test_half_open_allows_single_trial(self, breaker, mono):
        _trip(breaker)
        mono.now += 30

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_trial_success_closes(self, breaker, mono):
        _trip(breaker)
        mono.now += 30
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state == "closed"
        assert breaker.allow_request() is True

    def test_trial_failure_reopens(self, breaker, mono):
        _trip(breaker)
        mono.now += 30
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == "open"
        assert breaker.retry_after() == 30.0

    def test_reset_forces_closed(self, breaker):
        _trip(breaker)
        breaker.reset()
        assert breaker.state == "closed"

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestCall:
    async def test_call_passes_result_through(self, breaker):
        assert await breaker.call(_ok) == "ok"

    async def test_call_records_failures_and_reraises(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        assert breaker.state == "open"

    async def test_open_breaker_fails_fast_without_invoking(self, breaker, mono):
        _trip(breaker)
        mono.now += 10
        invoked = []

        async def tracked() -> str:
            invoked.append(True)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(tracked)

        assert invoked == []
        assert exc_info.value.retry_after == pytest.approx(20.0)

    async def test_cancelled_trial_frees_the_slot(self, breaker, mono):
        _trip(breaker)
        mono.now += 30

        async def cancelled() -> None:
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(cancelled)

        assert breaker.state == "half_open"
        assert breaker.allow_request() is True

    async def test_concurrent_calls_in_half_open_get_one_trial(self, breaker, mono):
        _trip(breaker)
        mono.now += 30
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

        release.set()
        assert await trial == "ok"
        assert breaker.state == "closed"
