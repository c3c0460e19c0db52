"""Decorator utilities for cross-cutting concerns."""
import functools
import inspect
import logging
import time
from typing import Any, Callable, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Log how long ``func`` took, for plain and ``async`` functions alike.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs its duration at debug level and its
        failures at warning level; exceptions are re-raised unchanged.
    """
    func_logger = logging.getLogger(func.__module__)

    def _log(start: float, error: Exception = None) -> None:
        duration = time.monotonic() - start
        if error is None:
            func_logger.debug(f"{func.__qualname__} completed in {duration:.3f}s")
        else:
            func_logger.warning(f"{func.__qualname__} failed after {duration:.3f}s: {error}")

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log(start, e)
                raise
            _log(start)
            return result
        return cast(F, async_wrapper)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _log(start, e)
            raise
        _log(start)
        return result
    return cast(F, wrapper)
