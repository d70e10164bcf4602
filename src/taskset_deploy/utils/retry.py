"""Retry strategy with exponential backoff for AWS operations."""

import time
import random
from typing import Callable, TypeVar, Optional, FrozenSet, Iterable
from functools import wraps
from botocore.exceptions import ClientError
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


# AWS error codes for transient failures
TRANSIENT_ERROR_CODES = frozenset({
    'RequestTimeout',
    'ServiceUnavailable',
    'ThrottlingException',
    'Throttling',
    'TooManyRequestsException',
    'RequestLimitExceeded',
    'RequestThrottled',
    'InternalError',
    'InternalFailure',
    'ServerException',
})

# Error codes meaning another writer got there first
CONFLICT_ERROR_CODES = frozenset({
    'ConcurrentModification',
    'ConcurrentModificationException',
    'ResourceInUse',
    'ResourceInUseException',
})


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors."""

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
    )

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_error_codes: Optional[Iterable[str]] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            retryable_error_codes: AWS error codes to retry on
                (defaults to transient errors)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_error_codes: FrozenSet[str] = frozenset(
            retryable_error_codes if retryable_error_codes is not None else TRANSIENT_ERROR_CODES
        )

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in self.retryable_error_codes

        return False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random jitter of up to 10% of the delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if all retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {self._get_error_info(e)}. "
                    f"Retrying in {delay:.2f}s..."
                )
                time.sleep(delay)
                attempt += 1

    def _get_error_info(self, error: Exception) -> str:
        """Extract useful error information for logging.

        Args:
            error: The exception

        Returns:
            Human-readable error description
        """
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {str(error)}"


def with_retry(
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add transient-error retry logic to a function.

    Example:
        @with_retry(max_retries=3, base_delay=2.0)
        def describe_listener(client, arn):
            return client.describe_listeners(ListenerArns=[arn])
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
