"""
Circuit Breaker - Message Source Failure Protection
Version: 3.0

Prevents hammering a failing upstream. Over a rolling window of recent
calls, the circuit OPENS when the error rate or the slow-call rate reaches
its threshold (once the window holds enough calls). After the recovery
timeout a limited number of HALF_OPEN trial calls decide between closing again
and re-opening.

NO business logic - purely infrastructure pattern.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from services.metrics import BREAKER_REJECTIONS, BREAKER_TRANSITIONS


logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Threshold exceeded - blocking calls
    HALF_OPEN = "half_open"  # Probing whether upstream recovered


@dataclass(frozen=True)
class BreakerConfig:
    window_seconds: float = 60.0
    volume_threshold: int = 5
    error_rate_threshold: float = 40.0      # percent
    slow_call_seconds: float = 10.0
    slow_call_rate_threshold: float = 40.0  # percent
    recovery_seconds: float = 30.0
    half_open_max_calls: int = 3

    @classmethod
    def from_settings(cls, settings) -> "BreakerConfig":
        return cls(
            window_seconds=settings.BREAKER_WINDOW_SECONDS,
            volume_threshold=settings.BREAKER_VOLUME_THRESHOLD,
            error_rate_threshold=settings.BREAKER_ERROR_RATE,
            slow_call_seconds=settings.BREAKER_SLOW_CALL_SECONDS,
            slow_call_rate_threshold=settings.BREAKER_SLOW_CALL_RATE,
            recovery_seconds=settings.BREAKER_RECOVERY_SECONDS,
            half_open_max_calls=settings.BREAKER_HALF_OPEN_CALLS,
        )


@dataclass
class CallRecord:
    finished_at: float
    failed: bool
    slow: bool


@dataclass
class CircuitMetrics:
    """Rolling state for a single circuit."""
    calls: Deque[CallRecord] = field(default_factory=deque)
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[float] = None
    half_open_in_flight: int = 0
    half_open_successes: int = 0


class CircuitBreaker:
    """
    Rolling-window circuit breaker.

    Pattern:
    - CLOSED: calls go through and are recorded in the window
    - OPEN: calls are rejected with CircuitOpenError until recovery_seconds pass
    - HALF_OPEN: up to half_open_max_calls trial calls; all succeed -> CLOSED,
      any failure or slow call -> OPEN
    """

    def __init__(self, config: Optional[BreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        """Initialize circuit breaker."""
        self.config = config or BreakerConfig()
        self.clock = clock
        self.circuits: Dict[str, CircuitMetrics] = {}
        self._lock = asyncio.Lock()
        logger.info("CircuitBreaker initialized")

    async def call(self, circuit_key: str, func, *args, **kwargs):
        """
        Execute function through circuit breaker.

        Args:
            circuit_key: Unique circuit identifier (e.g., "message_source:acct-1")
            func: Async function to execute
            *args, **kwargs: Function arguments

        Returns:
            Function result

        Raises:
            CircuitOpenError: If circuit is open or half-open trial calls are exhausted
            Original exception: If function fails
        """
        async with self._lock:
            circuit = self._get_circuit(circuit_key)

            if circuit.state == CircuitState.OPEN:
                if self._should_attempt_reset(circuit):
                    self._transition(circuit_key, circuit, CircuitState.HALF_OPEN)
                else:
                    BREAKER_REJECTIONS.labels(circuit=circuit_key).inc()
                    raise CircuitOpenError(
                        f"Circuit {circuit_key} is open. "
                        f"Retry in {self._time_until_reset(circuit):.0f}s."
                    )

            if circuit.state == CircuitState.HALF_OPEN:
                in_use = circuit.half_open_in_flight + circuit.half_open_successes
                if in_use >= self.config.half_open_max_calls:
                    BREAKER_REJECTIONS.labels(circuit=circuit_key).inc()
                    raise CircuitOpenError(f"Circuit {circuit_key} is half-open and probing.")
                circuit.half_open_in_flight += 1

        started = self.clock()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record(circuit_key, failed=True, duration=self.clock() - started)
            raise

        await self._record(circuit_key, failed=False, duration=self.clock() - started)
        return result

    async def _record(self, circuit_key: str, failed: bool, duration: float) -> None:
        slow = duration >= self.config.slow_call_seconds

        async with self._lock:
            circuit = self._get_circuit(circuit_key)

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.half_open_in_flight = max(0, circuit.half_open_in_flight - 1)
                if failed or slow:
                    self._transition(circuit_key, circuit, CircuitState.OPEN)
                    return
                circuit.half_open_successes += 1
                if circuit.half_open_successes >= self.config.half_open_max_calls:
                    self._transition(circuit_key, circuit, CircuitState.CLOSED)
                return

            if circuit.state == CircuitState.OPEN:
                # Started before the circuit opened; nothing to learn
                return

            now = self.clock()
            circuit.calls.append(CallRecord(finished_at=now, failed=failed, slow=slow))
            self._prune(circuit, now)

            if self._threshold_exceeded(circuit):
                self._transition(circuit_key, circuit, CircuitState.OPEN)

    def _threshold_exceeded(self, circuit: CircuitMetrics) -> bool:
        total = len(circuit.calls)
        if total < self.config.volume_threshold:
            return False

        failures = sum(1 for c in circuit.calls if c.failed)
        slow_calls = sum(1 for c in circuit.calls if c.slow)
        error_rate = failures * 100.0 / total
        slow_rate = slow_calls * 100.0 / total

        return (
            error_rate >= self.config.error_rate_threshold
            or slow_rate >= self.config.slow_call_rate_threshold
        )

    def _prune(self, circuit: CircuitMetrics, now: float) -> None:
        horizon = now - self.config.window_seconds
        while circuit.calls and circuit.calls[0].finished_at < horizon:
            circuit.calls.popleft()

    def _transition(self, circuit_key: str, circuit: CircuitMetrics, state: CircuitState) -> None:
        circuit.state = state
        circuit.half_open_in_flight = 0
        circuit.half_open_successes = 0

        if state == CircuitState.OPEN:
            circuit.opened_at = self.clock()
            logger.warning(f"🔴 Circuit OPEN: {circuit_key} (window calls: {len(circuit.calls)})")
        elif state == CircuitState.HALF_OPEN:
            logger.info(f"🔄 Circuit HALF_OPEN: {circuit_key}")
        else:
            circuit.opened_at = None
            circuit.calls.clear()
            logger.info(f"✅ Circuit CLOSED: {circuit_key}")

        BREAKER_TRANSITIONS.labels(circuit=circuit_key, to_state=state.value).inc()

    def _get_circuit(self, circuit_key: str) -> CircuitMetrics:
        """Get or create circuit."""
        if circuit_key not in self.circuits:
            self.circuits[circuit_key] = CircuitMetrics()
        return self.circuits[circuit_key]

    def _should_attempt_reset(self, circuit: CircuitMetrics) -> bool:
        """Check if enough time passed to attempt reset."""
        if circuit.opened_at is None:
            return False
        return self.clock() - circuit.opened_at >= self.config.recovery_seconds

    def _time_until_reset(self, circuit: CircuitMetrics) -> float:
        """Calculate time until circuit allows a trial call."""
        if circuit.opened_at is None:
            return 0.0
        remaining = self.config.recovery_seconds - (self.clock() - circuit.opened_at)
        return max(0.0, remaining)

    async def get_status(self, circuit_key: str) -> Dict:
        """Get circuit status."""
        async with self._lock:
            if circuit_key not in self.circuits:
                return {"state": CircuitState.CLOSED.value, "never_used": True}

            circuit = self.circuits[circuit_key]
            return {
                "state": circuit.state.value,
                "window_calls": len(circuit.calls),
                "window_failures": sum(1 for c in circuit.calls if c.failed),
                "time_until_reset": self._time_until_reset(circuit),
            }

    async def reset(self, circuit_key: str) -> None:
        """Manually reset circuit."""
        async with self._lock:
            if circuit_key in self.circuits:
                self._transition(circuit_key, self.circuits[circuit_key], CircuitState.CLOSED)
                logger.info(f"♻️ Circuit manually reset: {circuit_key}")


class CircuitOpenError(Exception):
    """Raised when circuit is open and calls are blocked."""
    pass
