"""
Retry helper for read-only gateway calls.

Order placement must never be wrapped with this decorator: a retried
placement that actually reached the exchange would double the position.
"""
import asyncio
import functools
import random
from typing import Type, Tuple, Optional, Callable

from agent_mirror.exceptions import AuthenticationError, DataError, OperationalError
from agent_mirror.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Tuple of exception types to retry on.
                          Defaults to OperationalError.
    """
    retry_on = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    # Bad credentials and bad input never heal on retry
                    if isinstance(e, (AuthenticationError, DataError, ValueError, TypeError)):
                        raise
                    if not isinstance(e, retry_on):
                        raise

                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRY_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "RETRY_TRANSIENT_ERROR",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )

                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)

        return wrapper
    return decorator
