from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

def init_logging(log_path: Path, level: int = logging.INFO) -> None:
    """
    Simple file+console logger. Call once early (e.g., in run_scrape.py) with cfg.log_file.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "%(levelname)s %(asctime)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    handlers = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler()
    ]
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers)

# ========== Exceptions ==========

class NavigationError(Exception):
    """Base class for page-load failures."""

class TransientNavigationError(NavigationError):
    """One navigation attempt failed; retryable within the current wait strategy."""

class NavigationExhaustedError(NavigationError):
    """Every wait strategy and every retry failed for a URL."""

    def __init__(self, url: str, attempts: int, last_error: Optional[BaseException] = None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        cause = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown"
        super().__init__(f"Navigation failed after {attempts} attempts for URL {url} (last error: {cause})")

class RetryExhaustedError(Exception):
    """An operation failed on every attempt of a RetryStrategy."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        cause = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown"
        super().__init__(f"Operation failed after {attempts} attempt(s); last error: {cause}")

class CandidateParseError(Exception):
    """A raw extraction candidate could not be turned into a business record."""

class LookupFailure(Exception):
    """Provider lookup failed for one phone number."""

class QueueCancelled(Exception):
    """A queued session was cancelled before it started."""

class SessionAborted(Exception):
    """A running session was stopped on request."""

class CriticalInfrastructureError(Exception):
    """Browser process or page is gone; the affected worker cannot continue."""

class TransientHTTPError(Exception):
    """Retryable transient HTTP/Net error (429/5xx/timeouts)."""

class NonRetryableHTTPError(Exception):
    """Non-retryable client error (e.g., 404)."""

def http_status_to_exc(status: Optional[int]) -> Optional[Exception]:
    if status is None:
        return None
    if status == 404:
        return NonRetryableHTTPError("404 Not Found")
    if status == 429 or status >= 500:
        return TransientHTTPError(f"HTTP {status}")
    if status >= 400:
        return NonRetryableHTTPError(f"HTTP {status}")
    return None

# Substrings in Playwright errors that mean the page/browser itself is gone
_CLOSED_PATTERNS = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "Connection closed",
    "has been closed",
)

def is_browser_closed_error(exc: BaseException) -> bool:
    msg = str(exc)
    return any(p in msg for p in _CLOSED_PATTERNS) or type(exc).__name__ == "TargetClosedError"

# ========== Small numeric / timing helpers ==========

def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


async def abortable_sleep(seconds: float, stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Sleep for `seconds`, waking early and raising SessionAborted if stop_event gets set.
    """
    if seconds <= 0:
        if stop_event is not None and stop_event.is_set():
            raise SessionAborted("stopped")
        return
    if stop_event is None:
        await asyncio.sleep(seconds)
        return
    if stop_event.is_set():
        raise SessionAborted("stopped")
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise SessionAborted("stopped during backoff")


class TokenBucket:
    """
    Simple async token bucket for rate limiting.
    capacity: max tokens
    refill_rate: tokens per second
    """
    def __init__(self, capacity: float, refill_rate: float):
        self.capacity = max(0.1, capacity)
        self.refill_rate = max(0.1, refill_rate)
        self._tokens = self.capacity
        self._last = time.perf_counter()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: float = 1.0):
        async with self._lock:
            await self._drain_until(tokens)

    async def _drain_until(self, tokens: float):
        while True:
            now = time.perf_counter()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            if self._tokens >= tokens:
                self._tokens -= tokens
                return
            # Not enough tokens; sleep until next refill tick
            deficit = tokens - self._tokens
            sleep_s = max(0.01, deficit / self.refill_rate)
            await asyncio.sleep(sleep_s)


def parse_retry_after_header(headers: dict[str, str] | Any) -> Optional[float]:
    """
    Parse Retry-After header. Supports:
      - integer seconds
      - HTTP-date
    Returns seconds (float) or None.
    """
    if not headers:
        return None
    try:
        ra = None
        for k, v in headers.items():
            if k.lower() == "retry-after":
                ra = v
                break
        if not ra:
            return None
        ra = ra.strip()
        if not ra:
            return None
        if ra.isdigit():
            return float(int(ra))
        dt = parsedate_to_datetime(ra)
        if not dt:
            return None
        delta = (dt.timestamp() - time.time())
        return float(max(0.0, delta))
    except Exception:
        return None


def retry_async(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=initial_delay_ms / 1000.0,
                max=max_delay_ms / 1000.0,
                jitter=jitter_ms / 1000.0,
            ),
            retry=retry_if_exception_type((TransientHTTPError, IOError, TimeoutError)),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator

# ========== Text helpers ==========

def slugify(text: str, max_len: int = 80) -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9\-_.]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-._")
    if len(text) > max_len:
        text = text[:max_len].rstrip("-._")
    return text or "untitled"


def parse_csv_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]


def dedupe_keep_order(items) -> list:
    seen = set()
    out = []
    for x in items:
        if x in seen:
            continue
        seen.add(x)
        out.append(x)
    return out

# ========== Page helpers ==========

async def try_close_page(page, timeout_ms: int = 1500) -> None:
    """
    Best-effort, bounded-time page close to avoid dangling Playwright objects
    when the event loop is under load or the browser is going away.
    """
    if page is None:
        return
    try:
        await asyncio.wait_for(page.close(), timeout=max(0.1, (timeout_ms or 1) / 1000.0))
    except Exception:
        # page might already be gone
        pass
