# contact_api/services/circuit_breaker.py
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from contact_api.core.exceptions import CircuitOpenError
from contact_api.core.logging import get_structlog_logger
from contact_api.services.store import Clock

logger = get_structlog_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fails fast after ``failure_threshold`` consecutive failures.

    CLOSED -> OPEN on the threshold, OPEN -> HALF_OPEN once
    ``recovery_timeout`` seconds have passed since the last failure,
    HALF_OPEN -> CLOSED after ``success_threshold`` consecutive successes.
    Any failure while HALF_OPEN reopens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 3,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._last_failure_at is not None
            and self.clock() - self._last_failure_at >= self.recovery_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self.state is CircuitState.OPEN:
            raise CircuitOpenError(details={"circuit": self.name})

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._reset()
        else:
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._last_failure_at = self.clock()

        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return

        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._last_failure_at = None

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.warning(
            "circuit.state_changed",
            circuit=self.name,
            from_state=self._state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )
        self._state = new_state
        self._success_count = 0

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure_at": self._last_failure_at,
        }
