"""Tests for the circuit breaker, the sliding-window limiter and retry handling."""
import asyncio

import httpx
import pytest

from thematica.errors import ProviderCallError, ProviderUnavailableError
from thematica.services.rate_limiter import (
    CircuitBreaker,
    CircuitState,
    ProviderGuard,
    RateLimiter,
    call_with_retries,
    is_rejected_request,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _guard(threshold: int = 2, clock: FakeClock | None = None) -> ProviderGuard:
    clock = clock or FakeClock()
    breaker = CircuitBreaker(
        "test", failure_threshold=threshold, failure_window_seconds=60, cooldown_seconds=30, clock=clock
    )
    return ProviderGuard("test", breaker, RateLimiter(100, 1.0, clock=clock))


class TestCircuitBreaker:
    def test_opens_after_threshold_failures(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=3, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        with pytest.raises(ProviderUnavailableError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_in_seconds == pytest.approx(30)
        assert exc_info.value.provider == "p"
        assert breaker.rejected_calls == 1

    def test_failures_outside_window_do_not_accumulate(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=2, failure_window_seconds=10, clock=clock)
        breaker.record_failure()
        clock.advance(20)
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("p", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_admits_a_single_probe(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        clock.advance(31)

        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(ProviderUnavailableError):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        breaker.before_call()

    def test_failed_probe_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        clock.advance(31)
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(ProviderUnavailableError):
            breaker.before_call()

    def test_released_probe_can_be_retaken(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        clock.advance(31)
        breaker.before_call()
        breaker.release_probe()
        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN


class TestRateLimiter:
    def test_window_limits_acquisitions(self):
        clock = FakeClock()
        limiter = RateLimiter(2, 10.0, clock=clock)
        assert limiter._try_acquire() == 0.0
        assert limiter._try_acquire() == 0.0
        assert limiter._try_acquire() == pytest.approx(10.0)

        clock.advance(10.0)
        assert limiter._try_acquire() == 0.0

    @pytest.mark.asyncio
    async def test_acquire_returns_when_slot_free(self):
        limiter = RateLimiter(5, 1.0)
        for _ in range(5):
            await asyncio.wait_for(limiter.acquire(), timeout=1.0)


class TestCallWithRetries:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise RuntimeError("temporary")
            return "ok"

        result = await call_with_retries(flaky, retry_max=3, backoff_seconds=0)
        assert result == "ok"
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_provider_call_error(self):
        attempts = 0

        async def broken():
            nonlocal attempts
            attempts += 1
            raise RuntimeError("down")

        with pytest.raises(ProviderCallError, match="after 3 attempts"):
            await call_with_retries(broken, retry_max=2, backoff_seconds=0)
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_open_circuit_is_not_retried(self):
        guard = _guard(threshold=1)
        guard.breaker.record_failure()
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            return "never"

        with pytest.raises(ProviderUnavailableError):
            await call_with_retries(operation, guard=guard, retry_max=5, backoff_seconds=0)
        assert attempts == 0

    @pytest.mark.asyncio
    async def test_guard_failures_trip_the_breaker(self):
        guard = _guard(threshold=2)

        async def broken():
            raise RuntimeError("down")

        with pytest.raises(ProviderUnavailableError):
            await call_with_retries(broken, guard=guard, retry_max=5, backoff_seconds=0)
        assert guard.breaker.state is CircuitState.OPEN


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://provider.test/v1/embeddings")
    return httpx.HTTPStatusError(
        f"{status} from provider", request=request, response=httpx.Response(status, request=request)
    )


def test_client_errors_are_rejected_requests():
    assert is_rejected_request(_status_error(400))
    assert is_rejected_request(_status_error(422))
    assert not is_rejected_request(_status_error(429))
    assert not is_rejected_request(_status_error(503))
    assert not is_rejected_request(RuntimeError("down"))


class TestRejectedRequests:
    @pytest.mark.asyncio
    async def test_rejected_request_is_not_retried_or_counted(self):
        guard = _guard(threshold=2)
        attempts = 0

        async def bad_input():
            nonlocal attempts
            attempts += 1
            raise _status_error(400)

        for _ in range(3):
            with pytest.raises(ProviderCallError, match="rejected"):
                await call_with_retries(bad_input, guard=guard, retry_max=3, backoff_seconds=0)
        assert attempts == 3
        assert guard.breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_rate_limited_reply_is_retried(self):
        guard = _guard(threshold=10)
        attempts = 0

        async def throttled():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise _status_error(429)
            return "ok"

        assert await call_with_retries(throttled, guard=guard, retry_max=2, backoff_seconds=0) == "ok"
        assert attempts == 2
