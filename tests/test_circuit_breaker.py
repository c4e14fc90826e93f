"""Tests for the async circuit breaker state machine."""

import asyncio

import httpx
import pytest

from piauth.service.circuit_breaker import BreakerState, CircuitBreaker
from piauth.service.errors import DependencyUnavailable
from piauth.storage.errors import SessionNotFound, StorageUnavailable


class Dependency:
    """Callable stand-in for a remote store that can be told to fail."""

    def __init__(self):
        self.calls = 0
        self.failing = False

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.failing:
            raise StorageUnavailable("store down")
        return value


@pytest.fixture
def dependency():
    return Dependency()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("store", failure_threshold=3, reset_timeout=30, clock=clock)


async def _fail(breaker, dependency, times):
    dependency.failing = True
    for _ in range(times):
        with pytest.raises(DependencyUnavailable):
            await breaker.call(dependency)


class TestClosedState:
    async def test_passes_results_through(self, breaker, dependency):
        assert await breaker.call(dependency, "value") == "value"
        assert breaker.state is BreakerState.CLOSED

    async def test_failures_below_threshold_stay_closed(self, breaker, dependency):
        await _fail(breaker, dependency, 2)

        assert breaker.state is BreakerState.CLOSED
        assert breaker.failure_count == 2

    async def test_success_resets_failure_count(self, breaker, dependency):
        await _fail(breaker, dependency, 2)
        dependency.failing = False

        await breaker.call(dependency)

        assert breaker.failure_count == 0

    async def test_domain_errors_are_not_failures(self, breaker):
        async def lookup():
            raise SessionNotFound("missing")

        for _ in range(5):
            with pytest.raises(SessionNotFound):
                await breaker.call(lookup)

        assert breaker.state is BreakerState.CLOSED
        assert breaker.failure_count == 0


class TestOpenState:
    async def test_threshold_opens_circuit(self, breaker, dependency):
        await _fail(breaker, dependency, 3)

        assert breaker.state is BreakerState.OPEN

    async def test_open_circuit_fails_fast(self, breaker, dependency, clock):
        await _fail(breaker, dependency, 3)
        calls = dependency.calls
        clock.advance(10)

        with pytest.raises(DependencyUnavailable) as exc_info:
            await breaker.call(dependency)

        assert dependency.calls == calls
        assert exc_info.value.retry_after == 20

    async def test_timeout_counts_as_failure(self, clock):
        breaker = CircuitBreaker(
            "slow", failure_threshold=1, reset_timeout=30, call_timeout=0.01, clock=clock
        )

        async def hang():
            await asyncio.sleep(5)

        with pytest.raises(DependencyUnavailable):
            await breaker.call(hang)

        assert breaker.state is BreakerState.OPEN

    async def test_transport_errors_count_as_failure(self, clock):
        breaker = CircuitBreaker("pi_api", failure_threshold=1, clock=clock)

        async def unreachable():
            raise httpx.ConnectError("refused")

        with pytest.raises(DependencyUnavailable):
            await breaker.call(unreachable)

        assert breaker.state is BreakerState.OPEN


class TestHalfOpenState:
    async def test_successful_trial_closes(self, breaker, dependency, clock):
        await _fail(breaker, dependency, 3)
        clock.advance(30)
        dependency.failing = False

        assert await breaker.call(dependency) == "ok"

        assert breaker.state is BreakerState.CLOSED
        assert breaker.failure_count == 0

    async def test_failed_trial_reopens(self, breaker, dependency, clock):
        await _fail(breaker, dependency, 3)
        clock.advance(30)

        with pytest.raises(DependencyUnavailable):
            await breaker.call(dependency)

        assert breaker.state is BreakerState.OPEN
        with pytest.raises(DependencyUnavailable):
            await breaker.call(dependency)
        assert dependency.calls == 4

    async def test_only_one_trial_call_admitted(self, breaker, dependency, clock):
        await _fail(breaker, dependency, 3)
        clock.advance(30)
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_trial():
            started.set()
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await started.wait()

        with pytest.raises(DependencyUnavailable):
            await breaker.call(dependency)

        release.set()
        assert await trial == "trial"
        assert breaker.state is BreakerState.CLOSED

    async def test_reset_closes_circuit(self, breaker, dependency):
        await _fail(breaker, dependency, 3)

        breaker.reset()

        assert breaker.state is BreakerState.CLOSED
