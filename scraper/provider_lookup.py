from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import httpx
from bs4 import BeautifulSoup

from extensions.error_logger import ErrorLogger, mask_phone

from .utils import (
    LookupFailure,
    SessionAborted,
    TokenBucket,
    TransientHTTPError,
    abortable_sleep,
    http_status_to_exc,
    parse_retry_after_header,
    retry_async,
    try_close_page,
)

logger = logging.getLogger(__name__)

UNKNOWN_PROVIDER = "Unknown"
BATCH_SIZE = 5
MAX_RETRY_AFTER_S = 30.0
_MARKER = re.compile(r"serviced by ", re.I)

_NON_DIGIT = re.compile(r"\D")
_TRAILING_PUNCT = re.compile(r"[.,;:!?]+$")

BatchResult = Dict[str, Union[str, BaseException]]


# ---------------------------
# Pure helpers
# ---------------------------

def clean_phone_number(phone: Optional[str]) -> str:
    """
    Digits only, with the international 27 prefix folded to a local leading 0.
    Idempotent: cleaning an already-cleaned number returns it unchanged.
    """
    digits = _NON_DIGIT.sub("", phone or "")
    if digits == "27":
        return "0"
    if digits.startswith("27") and len(digits) > 2:
        return "0" + digits[2:]
    return digits


def create_batches_of_five(items: Sequence[str]) -> List[List[str]]:
    items = list(items)
    return [items[i:i + BATCH_SIZE] for i in range(0, len(items), BATCH_SIZE)]


def parse_provider(text: Optional[str]) -> str:
    """Provider name following 'serviced by ', or 'Unknown'."""
    m = _MARKER.search(text or "")
    if m is None:
        return UNKNOWN_PROVIDER
    rest = text[m.end():].split()
    if not rest:
        return UNKNOWN_PROVIDER
    token = _TRAILING_PUNCT.sub("", rest[0])
    return token or UNKNOWN_PROVIDER


# ---------------------------
# Cache
# ---------------------------

class ProviderCache:
    """
    JSON-file cache of phone -> provider with a TTL.
    Stored at data/provider_cache.json as {phone: {"provider": str, "checked_at": epoch}}.
    """

    def __init__(self, path: Optional[Path], ttl_days: int = 30, *, clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl_s = max(0, ttl_days) * 86400
        self._clock = clock
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> None:
        async with self._lock:
            self._load_unlocked()

    def _load_unlocked(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not self.path.exists():
            return
        try:
            self._data.update(json.loads(self.path.read_text(encoding="utf-8")))
            logger.info("[provider-cache] Loaded %d entries", len(self._data))
        except Exception as e:
            logger.warning("[provider-cache] Failed to load: %s", e)

    def _save_unlocked(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")
        except Exception as e:
            logger.error("[provider-cache] Save failed: %s", e)

    def _fresh(self, entry: Dict[str, Any]) -> bool:
        return (self._clock() - float(entry.get("checked_at", 0))) <= self.ttl_s

    async def get_many(self, phones: Iterable[str]) -> Dict[str, str]:
        async with self._lock:
            self._load_unlocked()
            out = {}
            for p in phones:
                entry = self._data.get(p)
                if entry and self._fresh(entry):
                    out[p] = entry["provider"]
            return out

    async def set_many(self, mapping: Dict[str, str]) -> None:
        now = self._clock()
        async with self._lock:
            self._load_unlocked()
            for phone, provider in mapping.items():
                if provider and provider != UNKNOWN_PROVIDER:
                    self._data[phone] = {"provider": provider, "checked_at": now}
            self._save_unlocked()

    async def cleanup(self) -> int:
        async with self._lock:
            self._load_unlocked()
            stale = [k for k, v in self._data.items() if not self._fresh(v)]
            for k in stale:
                del self._data[k]
            if stale:
                self._save_unlocked()
            return len(stale)

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            self._load_unlocked()
            fresh = sum(1 for v in self._data.values() if self._fresh(v))
            providers: Dict[str, int] = {}
            for v in self._data.values():
                providers[v["provider"]] = providers.get(v["provider"], 0) + 1
            return {"total": len(self._data), "fresh": fresh, "stale": len(self._data) - fresh, "providers": providers}


# ---------------------------
# Backends
# ---------------------------

class ProviderBackend(Protocol):
    """
    Resolve up to five cleaned numbers. Per-number failures are returned as
    exception values; numbers not reached before `stop_event` is set are omitted.
    """

    async def lookup_batch(
        self, numbers: List[str], stop_event: Optional[asyncio.Event] = None
    ) -> BatchResult: ...


class PortingHttpBackend:
    """porting.co.za CRDB lookup over HTTP; reads the `span.p1` sentence of the result page."""

    def __init__(
        self,
        base_url: str = "https://www.porting.co.za/PublicWebsite/crdb",
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_ms: int = 15000,
        delay_ms: int = 500,
        max_attempts: int = 3,
        user_agent: Optional[str] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_ms = timeout_ms
        self.delay_ms = delay_ms
        self._owns_client = client is None
        headers = {"User-Agent": user_agent} if user_agent else None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000.0), follow_redirects=True, headers=headers
        )
        # one lookup per delay window across all batches
        rate = 1000.0 / delay_ms if delay_ms > 0 else 100.0
        self._bucket = TokenBucket(capacity=1.0, refill_rate=rate)
        self._fetch = retry_async(max_attempts, 1000, 8000, 250)(self._fetch_once)

    async def _fetch_once(self, number: str) -> str:
        try:
            resp = await self._client.get(self.base_url, params={"msisdn": number})
        except httpx.TimeoutException as e:
            raise TransientHTTPError(f"timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientHTTPError(f"transport: {e}") from e
        exc = http_status_to_exc(resp.status_code)
        if exc is not None:
            if resp.status_code == 429:
                wait_s = parse_retry_after_header(resp.headers)
                if wait_s:
                    logger.info("[provider-lookup] 429 for %s; honouring Retry-After %.1fs", mask_phone(number), wait_s)
                    await abortable_sleep(min(wait_s, MAX_RETRY_AFTER_S))
            raise exc
        return resp.text

    async def lookup_one(self, number: str) -> str:
        await self._bucket.acquire()
        html = await self._fetch(number)
        soup = BeautifulSoup(html, "html.parser")
        span = soup.select_one("span.p1")
        if span is None:
            raise LookupFailure(f"no result element for {number}")
        return parse_provider(span.get_text(" ", strip=True))

    async def lookup_batch(
        self, numbers: List[str], stop_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        out: BatchResult = {}
        for n in numbers:
            if stop_event is not None and stop_event.is_set():
                break
            try:
                out[n] = await self.lookup_one(n)
            except Exception as e:
                out[n] = e
        return out

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class PortingBrowserBackend:
    """Same lookup through a fresh Playwright context per batch (the site rate-limits per session)."""

    def __init__(
        self,
        browser: Any,
        base_url: str = "https://www.porting.co.za/PublicWebsite/crdb",
        *,
        timeout_ms: int = 15000,
        delay_ms: int = 500,
        page_close_timeout_ms: int = 1500,
    ) -> None:
        self.browser = browser
        self.base_url = base_url
        self.timeout_ms = timeout_ms
        self.delay_ms = delay_ms
        self.page_close_timeout_ms = page_close_timeout_ms

    async def _lookup_on_page(self, page: Any, number: str) -> str:
        await page.goto(f"{self.base_url}?msisdn={number}", wait_until="networkidle", timeout=self.timeout_ms)
        el = await page.wait_for_selector("span.p1", timeout=5000)
        text = (await el.text_content()) if el is not None else ""
        if not (text or "").strip():
            raise LookupFailure(f"empty result for {number}")
        return parse_provider(text.strip())

    async def lookup_batch(
        self, numbers: List[str], stop_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        out: BatchResult = {}
        context = await self.browser.new_context()
        try:
            for i, n in enumerate(numbers):
                if stop_event is not None and stop_event.is_set():
                    break
                page = await context.new_page()
                try:
                    out[n] = await self._lookup_on_page(page, n)
                except Exception as e:
                    out[n] = e
                finally:
                    await try_close_page(page, self.page_close_timeout_ms)
                if i < len(numbers) - 1 and self.delay_ms > 0:
                    try:
                        await abortable_sleep(self.delay_ms / 1000.0, stop_event)
                    except SessionAborted:
                        break
        finally:
            try:
                await context.close()
            except Exception as e:
                logger.debug("lookup context close failed: %s", e)
        return out

    async def aclose(self) -> None:
        return None


# ---------------------------
# Service
# ---------------------------

class ProviderLookupService:
    """
    Resolves phone numbers to network providers in batches of five, with at
    most `max_concurrent_batches` batches in flight. Any failure degrades the
    affected numbers to 'Unknown'.
    """

    def __init__(
        self,
        backend: ProviderBackend,
        *,
        max_concurrent_batches: int = 2,
        error_logger: Optional[ErrorLogger] = None,
        cache: Optional[ProviderCache] = None,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        if max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be >= 1")
        self.backend = backend
        self.max_concurrent_batches = max_concurrent_batches
        self.error_logger = error_logger
        self.cache = cache
        self.on_progress = on_progress
        self.last_started_at: Optional[float] = None

    # kept as methods too so callers can reach them from the service
    clean_phone_number = staticmethod(clean_phone_number)
    create_batches_of_five = staticmethod(create_batches_of_five)
    parse_provider = staticmethod(parse_provider)

    async def lookup_providers(
        self,
        phone_numbers: Iterable[Optional[str]],
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, str]:
        """
        Map each cleaned number to its provider. Once `stop_event` is set, no
        further batch starts and numbers that were not resolved are left out.
        """
        cleaned: List[str] = []
        seen = set()
        for raw in phone_numbers or []:
            c = clean_phone_number(raw)
            if c and c not in seen:
                seen.add(c)
                cleaned.append(c)
        if not cleaned:
            return {}

        self.last_started_at = time.monotonic()
        results: Dict[str, str] = {}

        cached: Dict[str, str] = {}
        if self.cache is not None:
            try:
                cached = await self.cache.get_many(cleaned)
            except Exception as e:
                logger.warning("[provider-lookup] cache read failed: %s", e)
        results.update(cached)
        pending = [p for p in cleaned if p not in cached]
        logger.info(
            "[provider-lookup] %d number(s): %d cached, %d to look up",
            len(cleaned), len(cached), len(pending),
        )

        batches = create_batches_of_five(pending)
        sem = asyncio.Semaphore(self.max_concurrent_batches)
        total = len(cleaned)
        done = len(cached)
        progress_lock = asyncio.Lock()
        fresh: Dict[str, str] = {}
        skipped = 0

        def _stopped() -> bool:
            return stop_event is not None and stop_event.is_set()

        async def _run(index: int, batch: List[str]) -> None:
            nonlocal done, skipped
            if _stopped():
                skipped += 1
                return
            async with sem:
                if _stopped():
                    skipped += 1
                    return
                resolved = await self._resolve_batch(index, batch, stop_event)
            fresh.update(resolved)
            async with progress_lock:
                done += len(batch)
                self._emit_progress(done, total, index + 1, len(batches), len(cached))

        await asyncio.gather(*(_run(i, b) for i, b in enumerate(batches)))
        if skipped:
            logger.info("[provider-lookup] stopped; skipped %d of %d batch(es)", skipped, len(batches))

        if self.cache is not None and fresh:
            try:
                await self.cache.set_many(fresh)
            except Exception as e:
                logger.warning("[provider-lookup] cache write failed: %s", e)

        results.update(fresh)
        # input order
        if _stopped():
            return {p: results[p] for p in cleaned if p in results}
        return {p: results.get(p, UNKNOWN_PROVIDER) for p in cleaned}

    async def _resolve_batch(
        self, index: int, batch: List[str], stop_event: Optional[asyncio.Event] = None
    ) -> Dict[str, str]:
        out: Dict[str, str] = {}
        try:
            raw = await self.backend.lookup_batch(list(batch), stop_event=stop_event)
        except Exception as e:
            logger.warning("[provider-lookup] batch %d failed: %s", index + 1, e)
            for n in batch:
                self._log_failure(n, e, index)
                out[n] = UNKNOWN_PROVIDER
            return out

        for n in batch:
            val = (raw or {}).get(n)
            if (val is None or isinstance(val, SessionAborted)) and stop_event is not None and stop_event.is_set():
                # never looked up
                continue
            if isinstance(val, BaseException):
                self._log_failure(n, val, index)
                out[n] = UNKNOWN_PROVIDER
            elif isinstance(val, str) and val.strip():
                out[n] = val.strip()
            else:
                self._log_failure(n, LookupFailure("no result"), index)
                out[n] = UNKNOWN_PROVIDER
        return out

    def _log_failure(self, number: str, error: BaseException, batch_index: int) -> None:
        if self.error_logger is not None:
            self.error_logger.log_provider_lookup_error(number, error, {"batch": batch_index + 1})

    def _emit_progress(self, completed: int, total: int, batch: int, total_batches: int, from_cache: int) -> None:
        if self.on_progress is None:
            return
        payload = {
            "completed": completed,
            "total": total,
            "percentage": round(completed / total * 100) if total else 100,
            "current_batch": batch,
            "total_batches": total_batches,
            "from_cache": from_cache,
        }
        try:
            self.on_progress(payload)
        except Exception as e:
            logger.debug("lookup progress callback failed: %s", e)


def build_backend(cfg: Any, *, browser: Any = None) -> ProviderBackend:
    kind = (getattr(cfg, "provider_backend", "http") or "http").lower()
    if kind == "browser":
        if browser is None:
            raise ValueError("browser provider backend needs a launched browser")
        return PortingBrowserBackend(
            browser,
            cfg.provider_lookup_url,
            timeout_ms=cfg.provider_request_timeout_ms,
            delay_ms=cfg.provider_lookup_delay_ms,
            page_close_timeout_ms=cfg.page_close_timeout_ms,
        )
    if kind != "http":
        raise ValueError(f"unknown provider backend {kind!r} (expected http|browser)")
    return PortingHttpBackend(
        cfg.provider_lookup_url,
        timeout_ms=cfg.provider_request_timeout_ms,
        delay_ms=cfg.provider_lookup_delay_ms,
        max_attempts=cfg.provider_max_attempts,
        user_agent=cfg.user_agent,
    )
