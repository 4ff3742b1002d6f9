"""Rate limiting, circuit breaking and retries for remote text/embedding providers.

One ``ProviderGuard`` exists per remote provider per process. Every outbound
call to that provider goes through it, so the token pool and the breaker
counters are the only shared mutable state and each is guarded by its own lock.
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import httpx
import openai
from loguru import logger

from thematica.errors import ConfigurationError, ProviderCallError, ProviderUnavailableError

T = TypeVar("T")
Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """CLOSED -> OPEN after N consecutive failures inside the window,
    OPEN -> HALF_OPEN after the cooldown (exactly one probe admitted),
    HALF_OPEN -> CLOSED on probe success or back to OPEN on probe failure."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        failure_window_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window_seconds = failure_window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._probe_in_flight = False
        self.rejected_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        """Admit a call or raise ProviderUnavailableError without attempting it."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return
            now = self._clock()
            if self._state is CircuitState.OPEN:
                remaining = self.cooldown_seconds - (now - self._opened_at)
                if remaining > 0:
                    self.rejected_calls += 1
                    raise ProviderUnavailableError(
                        f"{self.name} circuit is open",
                        provider=self.name,
                        retry_in_seconds=remaining,
                    )
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return
            # HALF_OPEN: only the single probe may be in flight.
            if self._probe_in_flight:
                self.rejected_calls += 1
                raise ProviderUnavailableError(
                    f"{self.name} circuit is half-open; probe in flight",
                    provider=self.name,
                )
            self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures.clear()
            self._probe_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._open(now)
                return
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.failure_window_seconds:
                self._failures.popleft()
            if self._state is CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._open(now)

    def release_probe(self) -> None:
        """Give back a probe slot whose call ended without an outcome (cancelled)."""
        with self._lock:
            self._probe_in_flight = False

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._failures.clear()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        logger.warning(f"Circuit '{self.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` acquisitions per ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: float, *, clock: Clock = time.monotonic):
        if max_requests < 1 or window_seconds <= 0:
            raise ConfigurationError("rate limit needs max_requests >= 1 and a positive window")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: deque[float] = deque()

    def _try_acquire(self) -> float:
        """Take a slot and return 0, or return how long to wait for the next one."""
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.window_seconds:
                self._calls.popleft()
            if len(self._calls) < self.max_requests:
                self._calls.append(now)
                return 0.0
            return max(self._calls[0] + self.window_seconds - now, 0.001)

    async def acquire(self) -> None:
        while True:
            wait = self._try_acquire()
            if wait == 0.0:
                return
            await asyncio.sleep(wait)


def is_rejected_request(exc: BaseException) -> bool:
    """True for a 4xx reply about the request itself (not 408/429).

    The provider answered, so the call is neither retried nor counted
    against its circuit.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    elif isinstance(exc, openai.APIStatusError):
        status = exc.status_code
    else:
        return False
    return 400 <= status < 500 and status not in (408, 429)


class ProviderGuard:
    """Breaker + limiter pair wrapping single attempts against one provider."""

    def __init__(self, name: str, breaker: CircuitBreaker, limiter: RateLimiter):
        self.name = name
        self.breaker = breaker
        self.limiter = limiter

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            await self.limiter.acquire()
            result = await operation()
        except asyncio.CancelledError:
            self.breaker.release_probe()
            raise
        except Exception as exc:
            if is_rejected_request(exc):
                self.breaker.record_success()
            else:
                self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return result


def build_provider_guard(name: str, settings) -> ProviderGuard:
    return ProviderGuard(
        name,
        CircuitBreaker(
            name,
            failure_threshold=settings.circuit_failure_threshold,
            failure_window_seconds=settings.circuit_failure_window_seconds,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ),
        RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds),
    )


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    guard: ProviderGuard | None = None,
    retry_max: int = 3,
    backoff_seconds: float = 0.5,
    context: str = "provider call",
) -> T:
    """Run ``operation`` with exponential backoff.

    An open circuit is never retried: ProviderUnavailableError propagates at once.
    A rejected request fails on the first attempt. After the last attempt the
    failure surfaces as ProviderCallError.
    """
    max_attempts = max(int(retry_max), 0) + 1
    provider = guard.name if guard else "unguarded"
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            if guard is not None:
                return await guard.call(operation)
            return await operation()
        except ProviderUnavailableError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning(f"{context} attempt {attempt}/{max_attempts} failed: {exc}")
            if is_rejected_request(exc):
                raise ProviderCallError(f"{context} rejected: {exc}", provider=provider) from exc
            if attempt < max_attempts:
                await asyncio.sleep(backoff_seconds * (2 ** (attempt - 1)))

    raise ProviderCallError(
        f"{context} failed after {max_attempts} attempts: {last_error}",
        provider=provider,
    ) from last_error
