"""
Decorators for error handling, deadlines, and request logging.

Wraps Jira API calls so that httpx failures surface as the typed errors
in errors.py. Nothing here retries: a failed call aborts the operation
that issued it.
"""

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, TypeVar, Any, Optional

import httpx

from .errors import (
    JiraError,
    BackendError,
    map_status_code_to_error,
    TimeoutError as JiraTimeoutError
)
from .log_sanitizer import sanitize_log_message, safe_log_error

# Type variable for generic function signatures
T = TypeVar('T')

logger = logging.getLogger(__name__)


def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    """Read the Retry-After header as seconds, if Jira sent one."""
    header = response.headers.get('Retry-After')
    if not header:
        return None
    try:
        return int(header)
    except (ValueError, TypeError):
        # HTTP-date form; fall back to a conservative wait
        logger.warning(f"Could not parse Retry-After header: {header}")
        return 60


def handle_jira_error(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Decorator mapping httpx exceptions to the JiraError hierarchy.

    - HTTP error responses become the status-specific BackendError
      subclass, with the response body kept verbatim.
    - httpx timeouts become TimeoutError.
    - Any other transport failure becomes a plain BackendError.

    Example:
        @handle_jira_error
        async def get_sprint(self, sprint_id: int):
            return await self._request("GET", f"/rest/agile/1.0/sprint/{sprint_id}")
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except JiraError:
            # Already a custom error, re-raise as-is
            raise
        except httpx.HTTPStatusError as e:
            response = e.response
            status_code = response.status_code
            retry_after = _parse_retry_after(response) if status_code == 429 else None
            body = sanitize_log_message(response.text)

            error = map_status_code_to_error(
                status_code,
                body=body,
                original_error=e,
                retry_after=retry_after
            )
            logger.error(f"Jira API error in {func.__name__}: {sanitize_log_message(str(error))}")
            raise error from e
        except httpx.TimeoutException as e:
            logger.error(f"Timeout in {func.__name__}: {safe_log_error(e)}")
            raise JiraTimeoutError(operation=func.__name__, original_error=e) from e
        except httpx.RequestError as e:
            logger.error(f"Request failed in {func.__name__}: {safe_log_error(e)}")
            raise BackendError(
                message=f"Could not reach Jira: {sanitize_log_message(str(e))}",
                original_error=e
            ) from e

    return wrapper


def with_timeout(timeout_seconds: float = 30) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator to add timeout to async operations.

    Args:
        timeout_seconds: Timeout in seconds (default: 30)

    Example:
        @with_timeout(timeout_seconds=30)
        @handle_jira_error
        async def get_board(self, board_id: int):
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await asyncio.wait_for(
                    func(*args, **kwargs),
                    timeout=timeout_seconds
                )
            except asyncio.TimeoutError as e:
                logger.error(
                    f"Timeout after {timeout_seconds}s in {func.__name__}"
                )
                raise JiraTimeoutError(
                    timeout_seconds=timeout_seconds,
                    operation=func.__name__,
                    original_error=e
                )

        return wrapper
    return decorator


async def run_with_deadline(
    awaitable: Awaitable[T],
    deadline_seconds: Optional[float],
    operation: str
) -> T:
    """
    Await with an optional caller-supplied deadline.

    Args:
        awaitable: The operation to run
        deadline_seconds: Seconds the whole operation may take; None means no limit
        operation: Name used in the timeout message

    Raises:
        TimeoutError: If the deadline passes before the operation completes
    """
    if deadline_seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline_seconds)
    except asyncio.TimeoutError as e:
        logger.error(f"{operation} exceeded its deadline of {deadline_seconds}s")
        raise JiraTimeoutError(
            timeout_seconds=deadline_seconds,
            operation=operation,
            original_error=e
        )


def log_execution(
    level: int = logging.INFO,
    log_args: bool = False,
    log_result: bool = False
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator to log function execution.

    Args:
        level: Logging level (default: INFO)
        log_args: Whether to log function arguments (default: False)
        log_result: Whether to log function result (default: False)
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            func_name = func.__name__

            if log_args:
                logger.log(
                    level,
                    sanitize_log_message(f"Calling {func_name} with args={args[1:]}, kwargs={kwargs}")
                )
            else:
                logger.log(level, f"Calling {func_name}")

            try:
                result = await func(*args, **kwargs)

                if log_result:
                    logger.log(level, f"{func_name} completed with result: {result}")
                else:
                    logger.log(level, f"{func_name} completed successfully")

                return result
            except Exception as e:
                logger.log(level, f"{func_name} failed with error: {sanitize_log_message(str(e))}")
                raise

        return wrapper
    return decorator


def jira_operation(
    timeout_seconds: float = 30
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Convenience decorator combining timeout and error handling.

    Applies decorators in the correct order:
    1. Timeout wrapper (outermost)
    2. Error handling (innermost)

    Example:
        @jira_operation(timeout_seconds=60)
        async def search_issues(self, jql: str, ...):
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        decorated = func
        decorated = handle_jira_error(decorated)
        decorated = with_timeout(timeout_seconds)(decorated)
        return decorated

    return decorator


class PerformanceMonitor:
    """
    Context manager and decorator for monitoring operation performance.

    Tracks execution time and logs slow operations.
    """

    def __init__(self, operation_name: str, warn_threshold_ms: float = 5000.0):
        """
        Initialize performance monitor.

        Args:
            operation_name: Name of the operation being monitored
            warn_threshold_ms: Threshold in milliseconds to log warnings (default: 5000)
        """
        self.operation_name = operation_name
        self.warn_threshold_ms = warn_threshold_ms
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    async def __aenter__(self):
        """Start monitoring."""
        self.start_time = asyncio.get_running_loop().time()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """End monitoring and log results."""
        self.end_time = asyncio.get_running_loop().time()
        duration_ms = self.duration_ms

        if duration_ms > self.warn_threshold_ms:
            logger.warning(
                f"Slow operation: {self.operation_name} took {duration_ms:.1f}ms "
                f"(threshold: {self.warn_threshold_ms:.1f}ms)"
            )
        else:
            logger.debug(
                f"Operation {self.operation_name} completed in {duration_ms:.1f}ms"
            )

    def __call__(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Use as a decorator."""
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async with PerformanceMonitor(
                operation_name=func.__name__,
                warn_threshold_ms=self.warn_threshold_ms
            ):
                return await func(*args, **kwargs)
        return wrapper
