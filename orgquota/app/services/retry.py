"""Retry mechanism with exponential backoff for conflicting transactions.

Serializable transactions can be aborted by the store when a concurrent
writer touches the same lots. The decorator below re-runs the whole
operation (a fresh transaction with a fresh sufficiency check) on
TransactionConflict only; every other error propagates immediately.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_logger
from orgquota.app.exceptions import TransactionConflict

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (0 disables retrying)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation
        retryable_exceptions: Tuple of exception types that trigger a retry
    """

    max_retries: int = 2
    base_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    retryable_exceptions: Tuple[Type[Exception], ...] = (TransactionConflict,)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.allocation_max_retries,
            base_delay=settings.allocation_retry_base_delay,
            max_delay=settings.allocation_retry_max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay for a 0-indexed attempt: min(base * exp_base ** attempt, max)."""
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        return isinstance(exception, self.retryable_exceptions)


def with_retry(policy: Optional[RetryPolicy] = None) -> Callable[[F], F]:
    """Decorator that re-runs an async operation on retryable exceptions.

    When no policy is given, the policy is read from settings on every
    call so configuration changes apply without re-decorating.

    Example:
        >>> @with_retry()
        ... async def allocate(self, ...):
        ...     async with serializable_transaction(self._session_maker) as session:
        ...         ...
    """

    def decorator(func: F) -> F:
        func_name = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            retry_policy = policy or RetryPolicy.from_settings()

            for attempt in range(retry_policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retry_policy.is_retryable(e):
                        raise

                    if attempt >= retry_policy.max_retries:
                        logger.warning(
                            f"Max retries ({retry_policy.max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = retry_policy.calculate_delay(attempt)
                    logger.warning(
                        f"Retry {attempt + 1}/{retry_policy.max_retries} for {func_name} "
                        f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)

        return wrapper  # type: ignore

    return decorator
