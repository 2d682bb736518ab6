"""
Tests for CircuitBreaker
Version: 3.0

Rolling-window thresholds driven by an injected clock.
"""

import pytest
from unittest.mock import AsyncMock

from services.circuit_breaker import BreakerConfig, CircuitBreaker, CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    config = BreakerConfig(
        window_seconds=60,
        volume_threshold=4,
        error_rate_threshold=50,
        slow_call_seconds=5,
        slow_call_rate_threshold=50,
        recovery_seconds=30,
        half_open_max_calls=2,
    )
    return CircuitBreaker(config, clock=clock)


async def succeed():
    return "ok"


async def fail():
    raise RuntimeError("upstream down")


async def run(breaker, func):
    try:
        return await breaker.call("source", func)
    except RuntimeError:
        return None


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_on_error_rate(self, breaker):
        for func in (succeed, succeed, fail, fail):
            await run(breaker, func)

        assert breaker.circuits["source"].state == CircuitState.OPEN

        upstream = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.call("source", upstream)
        upstream.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_needs_volume(self, breaker):
        for _ in range(3):
            await run(breaker, fail)

        status = await breaker.get_status("source")
        assert status["state"] == "closed"
        assert status["window_failures"] == 3

    @pytest.mark.asyncio
    async def test_opens_on_slow_calls(self, breaker, clock):
        async def slow():
            clock.advance(6)
            return "late"

        for func in (succeed, succeed, slow, slow):
            assert await breaker.call("source", func) in ("ok", "late")

        assert breaker.circuits["source"].state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_old_failures_leave_window(self, breaker, clock):
        await run(breaker, fail)
        await run(breaker, fail)
        clock.advance(120)

        for func in (succeed, succeed, fail):
            await run(breaker, func)

        status = await breaker.get_status("source")
        assert status["state"] == "closed"
        assert status["window_calls"] == 3

    @pytest.mark.asyncio
    async def test_half_open_recovers(self, breaker, clock):
        for _ in range(4):
            await run(breaker, fail)
        clock.advance(31)

        assert await breaker.call("source", succeed) == "ok"
        assert breaker.circuits["source"].state == CircuitState.HALF_OPEN

        assert await breaker.call("source", succeed) == "ok"
        assert breaker.circuits["source"].state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(4):
            await run(breaker, fail)
        clock.advance(31)

        await run(breaker, fail)

        status = await breaker.get_status("source")
        assert status["state"] == "open"
        assert status["time_until_reset"] == 30

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        for _ in range(4):
            await run(breaker, fail)

        await breaker.reset("source")

        assert await breaker.call("source", succeed) == "ok"

    @pytest.mark.asyncio
    async def test_unknown_circuit_status(self, breaker):
        assert await breaker.get_status("nope") == {"state": "closed", "never_used": True}
