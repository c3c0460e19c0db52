"""Fixed-attempt, fixed-delay retry for replication work."""
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from storage_api.errors import BackupInterruptedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Run an operation up to ``max_attempts`` times with a constant pause between tries.

    There is no exponential growth and no jitter. When every attempt fails the
    last error is re-raised unchanged. Errors listed in ``non_retryable`` are
    re-raised immediately. Cancelling the task while it sleeps between
    attempts raises ``BackupInterruptedError``, so an interrupted retry is
    never mistaken for a success.
    """

    def __init__(self, max_attempts: int = 3, backoff_millis: int = 5000,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_millis < 0:
            raise ValueError("backoff_millis must not be negative")
        self.max_attempts = max_attempts
        self.backoff_millis = backoff_millis
        self._sleep = sleep

    @property
    def delay_seconds(self) -> float:
        return self.backoff_millis / 1000.0

    async def run(self,
                  operation: Callable[[], Awaitable[T]],
                  description: str = "operation",
                  non_retryable: Tuple[Type[BaseException], ...] = ()) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except non_retryable:
                raise
            except Exception as e:
                if attempt == self.max_attempts:
                    logger.error(f"All {self.max_attempts} attempts failed for {description}: {e}")
                    raise
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} for {description} failed: {e}. "
                    f"Retrying in {self.delay_seconds:.2f}s"
                )

            try:
                await self._sleep(self.delay_seconds)
            except asyncio.CancelledError as e:
                raise BackupInterruptedError("Backup retry interrupted") from e

        raise AssertionError("unreachable")  # pragma: no cover
