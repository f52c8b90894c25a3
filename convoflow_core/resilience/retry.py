"""Retry with exponential backoff for state store operations."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

import structlog

from ..core.errors import StorePersistenceError, TransientProcessingError


logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.05  # Base delay in seconds
    max_delay: float = 1.0  # Maximum delay in seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # Random jitter factor (0-1)
    retryable_exceptions: Tuple[Type[Exception], ...] = (StorePersistenceError,)


@dataclass
class RetryStats:
    """Statistics for retry operations."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_delay: float = 0.0
    exceptions_by_type: Dict[str, int] = field(default_factory=dict)


class RetryPolicy:
    """
    Retries an async operation with exponential backoff and jitter.

    When every attempt fails with a retryable error the last error is
    wrapped in TransientProcessingError. Other exceptions propagate
    untouched on the first occurrence.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=5))
        state = await policy.execute(store.load, tenant_id, user_id, session_id)
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._stats = RetryStats()

    @property
    def stats(self) -> RetryStats:
        return self._stats

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        jitter = random.uniform(-self.config.jitter, self.config.jitter)
        return min(delay * (1 + jitter), self.config.max_delay)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        operation: str = "operation",
        **kwargs,
    ) -> T:
        """
        Execute func with retries.

        Raises:
            TransientProcessingError: If all attempts fail
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.config.max_attempts):
            self._stats.total_attempts += 1
            try:
                result = await func(*args, **kwargs)
                self._stats.successful_attempts += 1
                return result
            except self.config.retryable_exceptions as e:
                last_exception = e
                self._stats.failed_attempts += 1
                name = type(e).__name__
                self._stats.exceptions_by_type[name] = self._stats.exceptions_by_type.get(name, 0) + 1

                if attempt + 1 >= self.config.max_attempts:
                    break

                delay = self.calculate_delay(attempt)
                self._stats.total_delay += delay
                logger.warning(
                    "retrying_operation",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await self._sleep(delay)

        self._stats.retries_exhausted += 1
        logger.error(
            "retries_exhausted",
            operation=operation,
            attempts=self.config.max_attempts,
            error=str(last_exception),
        )
        raise TransientProcessingError(
            f"{operation} failed after {self.config.max_attempts} attempts: {last_exception}",
            attempts=self.config.max_attempts,
        ) from last_exception
