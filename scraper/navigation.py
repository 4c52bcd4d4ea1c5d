from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from extensions.error_logger import ErrorLogger

from .config import NavigationOptions
from .retry import RetryStrategy
from .utils import (
    CriticalInfrastructureError,
    NavigationExhaustedError,
    RetryExhaustedError,
    TransientNavigationError,
    clamp,
    is_browser_closed_error,
)

logger = logging.getLogger(__name__)

HISTORY_SIZE = 10
MIN_SAMPLES_FOR_ADAPTIVE = 3
ATTEMPT_TIMEOUT_INCREMENT_MS = 30_000
TIMEOUT_INCREASE_STEP_MS = 15_000
TIMEOUT_DECREASE_STEP_MS = 10_000
SLOW_RATIO = 0.8
FAST_RATIO = 0.5


class WaitStrategy(Enum):
    """Playwright `wait_until` values, strictest first."""
    NETWORKIDLE = "networkidle"
    LOAD = "load"
    DOMCONTENTLOADED = "domcontentloaded"
    COMMIT = "commit"


WAIT_STRATEGIES: tuple[WaitStrategy, ...] = tuple(WaitStrategy)


@dataclass(frozen=True)
class NavigationResult:
    url: str
    strategy: WaitStrategy
    attempts: int
    timeout_ms: float
    elapsed_ms: float


class NavigationManager:
    """
    Loads a URL with per-strategy exponential backoff and an adaptive timeout.

    State (rolling window, current timeout, lifetime count) is private to the
    instance; create one per worker.
    """

    def __init__(
        self,
        options: Optional[NavigationOptions] = None,
        *,
        error_logger: Optional[ErrorLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or NavigationOptions()
        self.error_logger = error_logger
        self._clock = clock
        self.current_timeout: float = float(self.options.initial_timeout_ms)
        self._recent: Deque[float] = deque(maxlen=HISTORY_SIZE)
        self.navigation_count = 0

    # ---------------- Navigation ----------------

    def _effective(self, options: Optional[NavigationOptions | Dict[str, Any]]) -> NavigationOptions:
        if options is None:
            return self.options
        if isinstance(options, NavigationOptions):
            return options
        return replace(self.options, **options)

    def attempt_timeout(self, attempt_index: int, options: Optional[NavigationOptions] = None) -> float:
        opts = options or self.options
        base = self.get_adaptive_timeout()
        return clamp(base + attempt_index * ATTEMPT_TIMEOUT_INCREMENT_MS, opts.min_timeout_ms, opts.max_timeout_ms)

    async def navigate_with_retry(
        self,
        page: Any,
        url: str,
        options: Optional[NavigationOptions | Dict[str, Any]] = None,
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> NavigationResult:
        opts = self._effective(options)
        started = self._clock()
        attempts = 0
        last_error: Optional[BaseException] = None

        for strategy in WAIT_STRATEGIES:
            attempt_index = 0

            async def _attempt() -> tuple[float, float]:
                nonlocal attempt_index, attempts, last_error
                i = attempt_index
                attempt_index += 1
                attempts += 1
                timeout = self.attempt_timeout(i, opts)
                logger.debug(
                    "Attempt %d/%d strategy=%s timeout=%dms url=%s",
                    i + 1, opts.max_retries, strategy.value, timeout, url,
                )
                t0 = self._clock()
                try:
                    await page.goto(url, wait_until=strategy.value, timeout=timeout)
                except Exception as e:
                    if is_browser_closed_error(e):
                        raise CriticalInfrastructureError(f"page unusable while loading {url}: {e}") from e
                    last_error = e
                    logger.info(
                        "Navigation attempt %d/%d (%s) failed for %s: %s",
                        i + 1, opts.max_retries, strategy.value, url, e,
                    )
                    raise TransientNavigationError(str(e)) from e
                return (self._clock() - t0) * 1000.0, timeout

            retrier = RetryStrategy(
                opts.max_retries,
                opts.base_delay_ms,
                retry_on=(TransientNavigationError,),
                stop_event=stop_event,
                name=f"navigate[{strategy.value}]",
            )
            try:
                elapsed_ms, timeout = await retrier.execute(_attempt)
            except RetryExhaustedError:
                logger.info("All retries exhausted for strategy '%s'; trying next strategy", strategy.value)
                continue

            self._record_navigation_time(elapsed_ms)
            logger.info(
                "Navigation ok after %d attempt(s) strategy=%s timeout=%dms took=%dms url=%s",
                attempts, strategy.value, timeout, elapsed_ms, url,
            )
            return NavigationResult(url, strategy, attempts, timeout, elapsed_ms)

        total_ms = (self._clock() - started) * 1000.0
        err = NavigationExhaustedError(url, attempts, last_error)
        if self.error_logger is not None:
            self.error_logger.log_error(
                str(err),
                last_error,
                {
                    "url": url,
                    "total_time_ms": round(total_ms),
                    "strategies_tried": len(WAIT_STRATEGIES),
                    "retries_per_strategy": opts.max_retries,
                },
            )
        raise err

    # ---------------- Adaptive timeout ----------------

    def _record_navigation_time(self, elapsed_ms: float) -> None:
        self._recent.append(elapsed_ms)
        self.navigation_count += 1
        self.adjust_timeout(elapsed_ms)

    def adjust_timeout(self, observed_ms: float) -> None:
        lo, hi = self.options.min_timeout_ms, self.options.max_timeout_ms
        if observed_ms > self.current_timeout * SLOW_RATIO:
            self.current_timeout = min(hi, self.current_timeout + TIMEOUT_INCREASE_STEP_MS)
            logger.debug("Timeout increased to %dms (operation took %dms)", self.current_timeout, observed_ms)
        elif observed_ms < self.current_timeout * FAST_RATIO:
            self.current_timeout = max(lo, self.current_timeout - TIMEOUT_DECREASE_STEP_MS)
            logger.debug("Timeout decreased to %dms (operation took %dms)", self.current_timeout, observed_ms)
        self.current_timeout = clamp(self.current_timeout, lo, hi)

    def get_adaptive_timeout(self) -> float:
        if len(self._recent) < MIN_SAMPLES_FOR_ADAPTIVE:
            return self.current_timeout
        avg = sum(self._recent) / len(self._recent)
        return clamp(math.ceil(avg * 2), self.options.min_timeout_ms, self.options.max_timeout_ms)

    # ---------------- Stats ----------------

    def get_statistics(self) -> Dict[str, Any]:
        recent = list(self._recent)
        return {
            "current_timeout": self.current_timeout,
            "average_navigation_time": round(sum(recent) / len(recent)) if recent else 0,
            "navigation_count": self.navigation_count,
            "recent_times": recent,
        }

    def reset(self) -> None:
        self._recent.clear()
        self.navigation_count = 0
        self.current_timeout = float(self.options.initial_timeout_ms)
