from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from marketplace.infra.metrics import metrics

logger = logging.getLogger("marketplace.circuit")

T = TypeVar("T")


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"circuit {name} is open")
        self.name = name
        self.retry_after = max(0.0, retry_after)


class CircuitBreaker:
    """Fails fast after repeated errors from a remote collaborator.

    ``failure_threshold`` raised exceptions inside ``window_seconds`` open the
    circuit for ``recovery_time``. After that a single trial call is let
    through: success closes the circuit, failure opens it again. Only raised
    exceptions count, so a gateway decline keeps the circuit closed.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        call_timeout: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.call_timeout = call_timeout
        self._state = CircuitState.closed
        self._opened_at = 0.0
        self._failures: deque[float] = deque()
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> str:
        return self._state.value

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async with self._lock:
            self._admit(time.monotonic())
        try:
            pending = fn(*args, **kwargs)
            if self.call_timeout is not None:
                pending = asyncio.wait_for(pending, timeout=self.call_timeout)
            result = await pending
        except asyncio.CancelledError:
            # an abandoned trial neither closes nor reopens the circuit
            self._trial_in_flight = False
            raise
        except Exception as exc:  # noqa: BLE001
            async with self._lock:
                self._record_failure(time.monotonic())
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self.state, "error": type(exc).__name__}},
            )
            raise
        async with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            self._move_to(CircuitState.closed)
        return result

    def _admit(self, now: float) -> None:
        if self._state is CircuitState.open:
            remaining = self._opened_at + self.recovery_time - now
            if remaining > 0:
                raise CircuitBreakerOpenError(self.name, remaining)
            self._move_to(CircuitState.half_open)
        if self._state is CircuitState.half_open:
            if self._trial_in_flight:
                raise CircuitBreakerOpenError(self.name, self.recovery_time)
            self._trial_in_flight = True

    def _record_failure(self, now: float) -> None:
        self._failures.append(now)
        while self._failures and self._failures[0] < now - self.window_seconds:
            self._failures.popleft()
        if self._state is CircuitState.half_open or len(self._failures) >= self.failure_threshold:
            self._opened_at = now
            self._trial_in_flight = False
            self._move_to(CircuitState.open)

    def _move_to(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        metrics.record_circuit_state(self.name, state.value)
        log = logger.warning if state is CircuitState.open else logger.info
        log(
            f"circuit_{state.value}",
            extra={"extra": {"name": self.name, "previous": previous.value}},
        )
