"""Per-dependency circuit breakers.

Provides circuit breakers for external dependencies with:
- Three states: CLOSED (normal), OPEN (rejecting), HALF_OPEN (probing)
- Configurable failure threshold and reset timeout per dependency
- Lazy OPEN -> HALF_OPEN evaluation on the next call
"""

import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import CircuitOpenError
from ..monitoring.metrics import circuit_breaker_rejections, circuit_breaker_transitions

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Dependency failing, reject calls
    HALF_OPEN = "HALF_OPEN"  # Probing whether the dependency recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 3  # Consecutive successes to close from half-open
    reset_timeout: float = 60.0  # Seconds before probing in half-open


class CircuitBreaker:
    """Circuit breaker guarding one external dependency.

    Usage:
        breaker = CircuitBreaker("news_service")
        articles = await breaker.execute(lambda: fetch_articles(query))

        # Or as a decorator:
        @breaker.protect
        async def call_news_api():
            ...
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize circuit breaker.

        Args:
            name: Dependency name for logging and metrics
            config: Circuit breaker configuration
            clock: Time source in seconds
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._total_requests = 0

    @property
    def state(self) -> CircuitState:
        """Current state. Transitions out of OPEN happen only inside execute()."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the breaker is open; the operation is not invoked
            Exception: Whatever the operation raised
        """
        self._total_requests += 1

        if self._state == CircuitState.OPEN:
            if self._reset_timeout_elapsed():
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                circuit_breaker_rejections.labels(breaker=self.name).inc()
                raise CircuitOpenError(
                    f"Service {self.name} is temporarily unavailable",
                    context={"breaker": self.name, "circuit_state": self._state.value},
                )

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.config.reset_timeout

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure while probing reopens
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _transition_to(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state

        if state == CircuitState.OPEN:
            logger.warning(
                f"Circuit breaker {self.name} OPENED after {self._failure_count} failures"
            )
        elif state == CircuitState.HALF_OPEN:
            self._success_count = 0
            logger.info(f"Circuit breaker {self.name} entering HALF_OPEN for recovery test")
        else:
            self._failure_count = 0
            self._success_count = 0
            logger.info(f"Circuit breaker {self.name} CLOSED - service recovered")

        circuit_breaker_transitions.labels(breaker=self.name, state=state.value).inc()
        logger.debug(f"Circuit breaker {self.name}: {previous.value} -> {state.value}")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        logger.info(f"Circuit breaker {self.name} manually reset")

    def protect(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator to protect an async function with this breaker.

        Args:
            func: Coroutine function to protect

        Returns:
            Protected coroutine function
        """

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await self.execute(lambda: func(*args, **kwargs))

        return wrapper

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status.

        Returns:
            Status dictionary
        """
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
            "last_failure": self._last_failure_time,
        }


class CircuitBreakerRegistry:
    """One breaker per dependency, owned by the process composition root."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def register(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Create and register a breaker for a dependency.

        Raises:
            ValueError: If a breaker with this name already exists
        """
        if name in self._breakers:
            raise ValueError(f"Circuit breaker {name} is already registered")
        breaker = CircuitBreaker(name, config, clock=self._clock)
        self._breakers[name] = breaker
        logger.info(
            f"Registered circuit breaker {name} "
            f"(threshold={breaker.config.failure_threshold}, "
            f"reset_timeout={breaker.config.reset_timeout}s)"
        )
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        try:
            return self._breakers[name]
        except KeyError:
            raise KeyError(f"No circuit breaker registered for {name}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self):
        return iter(self._breakers.values())

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
