"""
Retry utilities with exponential backoff for marketplace calls.

Only transient failures are retried: exceptions whose ``retryable`` flag is
set (``MarketplaceUnavailable``, ``RateLimited``). Auth and configuration
failures propagate on the first attempt.
"""

import asyncio
import random
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional

from marketplace_bridge.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3  # Total attempts, including the first
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 10.0  # Maximum delay in seconds
    exponential_base: float = 2.0
    jitter: bool = True  # Add random jitter to prevent thundering herd

    # Rate limiting
    respect_retry_after: bool = True
    max_retry_after: float = 60.0

    @classmethod
    def from_config(cls, config) -> "RetryConfig":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )


class ExponentialBackoff:
    """
    Exponential backoff calculator with jitter.

    - Base delay starts at ``base_delay``
    - Each retry doubles the delay
    - Random jitter (up to 25% downward) spreads concurrent retries
    - ``max_delay`` caps the wait
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def reset(self) -> None:
        """Reset attempt counter."""
        self.attempt = 0

    def calculate_delay(self, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay before the next attempt.

        Args:
            retry_after: Server-provided hint from a 429 response

        Returns:
            Delay in seconds
        """
        if retry_after is not None and self.config.respect_retry_after:
            if retry_after <= self.config.max_retry_after:
                logger.debug(f"Using Retry-After hint: {retry_after}s")
                self.attempt += 1
                return retry_after
            logger.warning(f"Retry-After too large ({retry_after}s), using exponential backoff")

        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            delay -= random.uniform(0, delay * 0.25)

        self.attempt += 1

        logger.debug(f"Calculated retry delay: {delay:.2f}s (attempt {self.attempt})")
        return delay

    def should_retry(self, exception: BaseException) -> bool:
        """
        Determine if we should retry after ``exception``.

        Called after a failed attempt; ``attempt`` counts retries already made.
        """
        if self.attempt + 1 >= self.config.max_attempts:
            logger.debug(f"Max attempts ({self.config.max_attempts}) reached")
            return False

        if getattr(exception, "retryable", False):
            logger.debug(f"Retrying on exception: {type(exception).__name__}")
            return True

        logger.debug(f"Not retrying exception: {type(exception).__name__}")
        return False


class RetryPolicy:
    """
    Executes async operations with bounded exponential backoff.

    Example:
        policy = RetryPolicy(RetryConfig(max_attempts=3))
        token = await policy.execute(exchange_refresh_token, tenant_id)
    """

    def __init__(self, config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or RetryConfig()
        self._sleep = sleep

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute ``func`` with retry logic.

        Raises:
            The last exception once it is not retryable or attempts are exhausted.
        """
        backoff = ExponentialBackoff(self.config)
        name = getattr(func, "__name__", "operation")

        while True:
            try:
                return await func(*args, **kwargs)

            except Exception as e:
                if not backoff.should_retry(e):
                    if getattr(e, "retryable", False):
                        logger.error(f"Retries exhausted for {name}: {e}")
                    raise

                delay = backoff.calculate_delay(getattr(e, "retry_after", None))
                logger.warning(
                    f"{name} failed with {type(e).__name__}, retrying in {delay:.2f}s "
                    f"(attempt {backoff.attempt + 1}/{self.config.max_attempts})"
                )
                await self._sleep(delay)


def retry_with_backoff(config: Optional[RetryConfig] = None):
    """
    Decorator for retrying coroutine functions with exponential backoff.

    Args:
        config: Retry configuration (uses default if None)
    """
    policy = RetryPolicy(config)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await policy.execute(func, *args, **kwargs)
        return wrapper

    return decorator
