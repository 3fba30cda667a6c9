"""
Bounded retry with exponential backoff, and timeout racing, for async
operations.

``with_timeout`` relies on ``asyncio.wait_for``. When the wrapped coroutine
is awaiting a worker thread (``asyncio.to_thread``) the thread itself cannot
be cancelled: the call is abandoned, may still complete, and its result is
discarded.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mgnrega_pulse.core.errors import UpstreamTimeoutError, ValidationError

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class RetryExecutor:
    """Runs an operation up to ``max_attempts`` times.

    The wait after failed attempt ``n`` is ``base_delay_ms * 2**(n-1)``.
    ``sleep`` is injectable so tests can drive a fake clock.
    """

    def __init__(self,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
                 non_retryable: Tuple[Type[BaseException], ...] = (ValidationError,)):
        self.sleep = sleep or asyncio.sleep
        self.non_retryable = non_retryable

    def retrying(self, max_attempts: int, base_delay_ms: float) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay_ms / 1000.0),
            retry=retry_if_not_exception_type(self.non_retryable),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def execute(self, operation: Operation, max_attempts: int = 3, base_delay_ms: float = 1000,
                      name: str = "operation") -> Any:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        try:
            return await self.retrying(max_attempts, base_delay_ms)(operation)
        except self.non_retryable:
            raise
        except Exception as e:
            logger.error("%s failed after at most %d attempts: %s", name, max_attempts, e)
            raise

    async def with_timeout(self, operation: Operation, ms: float) -> Any:
        try:
            return await asyncio.wait_for(operation(), timeout=ms / 1000.0)
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(f"Request timeout after {ms}ms")
