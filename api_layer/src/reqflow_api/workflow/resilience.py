"""
Retry policies for optimistic-concurrency conflicts.

Only ConflictError is retried; every other workflow error is final for the call.
"""

from typing import Any
from typing import Awaitable
from typing import Callable
from typing import TypeVar

from loguru import logger
from tenacity import RetryCallState
from tenacity import retry
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_random_exponential

from reqflow_api.workflow.exceptions import ConflictError

T = TypeVar("T")


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    name = getattr(retry_state.fn, "__name__", "operation")
    logger.warning(
        f"Conflict on attempt {retry_state.attempt_number} of {name}, retrying",
        attempt=retry_state.attempt_number,
        error_message=str(exc) if exc else None,
    )


def create_conflict_retry(max_attempts: int = 3, max_wait: float = 0.2) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Create a retry decorator for operations that may lose a version race.

    Args:
        max_attempts: Total attempts including the first call
        max_wait: Upper bound for the jittered backoff (seconds)

    Returns:
        A tenacity retry decorator that re-raises the last ConflictError
    """
    return retry(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=0.01, max=max_wait),
        before_sleep=_log_retry_attempt,
        reraise=True,
    )


async def run_with_conflict_retry(operation: Callable[[], Awaitable[Any]], max_attempts: int) -> Any:
    """Run a read-validate-write operation, re-running it from scratch on ConflictError."""
    return await create_conflict_retry(max_attempts)(operation)()
