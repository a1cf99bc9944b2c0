"""Circuit breaker for operations against the VM."""

import logging
import time
from enum import Enum
from typing import Any, Callable

from .exceptions import VMRuntimeError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    # one trial call is let through after the timeout
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops retrying an operation that keeps failing.

    Guards both the host agent queries and the always-on restart loop, where an activation that
    fails immediately would otherwise keep regenerating keys.
    """

    def __init__(self, name: str, failure_threshold: int = 5, timeout: float = 30.0):
        """Initialize circuit breaker.

        Args:
            name: What is being guarded, used in logs and errors
            failure_threshold: Consecutive failures before the circuit opens
            timeout: Seconds the circuit stays open before a trial call
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self.state = CircuitState.CLOSED

    def retry_in(self) -> float:
        """Seconds until an open circuit lets a trial call through."""
        if self.state is not CircuitState.OPEN or self.last_failure_time is None:
            return 0.0
        return max(0.0, self.timeout - (time.monotonic() - self.last_failure_time))

    def ensure_closed(self) -> None:
        """Raise while the circuit is open; move to half-open once the timeout has passed."""
        if self.state is not CircuitState.OPEN:
            return

        remaining = self.retry_in()
        if remaining > 0:
            raise VMRuntimeError(
                f"Circuit breaker for {self.name} is OPEN after {self.failure_count} consecutive "
                f"failures, retrying in {remaining:.0f} seconds"
            )

        logger.info(f"Circuit breaker for {self.name} half-open, allowing a trial call")
        self.state = CircuitState.HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Await ``func`` unless the circuit is open, recording the outcome."""
        self.ensure_closed()

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info(f"Circuit breaker for {self.name} closed")
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        # a failed trial call reopens immediately
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning(
                    f"Circuit breaker for {self.name} opened after {self.failure_count} failures"
                )
            self.state = CircuitState.OPEN

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED
