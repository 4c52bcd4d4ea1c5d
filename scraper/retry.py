from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .utils import RetryExhaustedError, abortable_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay_ms(base_delay_ms: float, attempt_index: int) -> float:
    """Delay after the failed attempt with 0-based index `attempt_index`."""
    return base_delay_ms * (2 ** attempt_index)


class RetryStrategy:
    """
    Exponential-backoff executor for any fallible coroutine.

    Before attempt k (k >= 2) it waits base_delay_ms * 2**(k-2). When every
    attempt fails it raises RetryExhaustedError chained to the last cause.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: float = 1000,
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        stop_event: Optional[asyncio.Event] = None,
        name: str = "operation",
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {max_attempts})")
        if base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0 (got {base_delay_ms})")
        self.max_attempts = int(max_attempts)
        self.base_delay_ms = float(base_delay_ms)
        self.retry_on = retry_on
        self.stop_event = stop_event
        self.name = name

    async def _sleep(self, seconds: float) -> None:
        logger.debug("%s: waiting %.0fms before next attempt", self.name, seconds * 1000)
        await abortable_sleep(seconds, self.stop_event)

    def _before_sleep(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "%s: attempt %d/%d failed: %s",
            self.name, retry_state.attempt_number, self.max_attempts, exc,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            # tenacity: multiplier * 2**(attempt_number - 1) after attempt_number fails
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000.0, exp_base=2, min=0),
            retry=retry_if_exception_type(self.retry_on),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await operation()
        except RetryError as e:
            last = e.last_attempt.exception()
            raise RetryExhaustedError(self.max_attempts, last) from last
        raise RetryExhaustedError(self.max_attempts, None)  # pragma: no cover
