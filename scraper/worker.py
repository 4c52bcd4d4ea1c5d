from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

from extensions.error_logger import ErrorLogger
from extensions.logging_manager import LoggingManager

from .extraction import Extractor, GoogleMapsExtractor, PageShape, looks_like_captcha
from .filters import is_opening_hours, looks_like_phone_number, looks_like_rating
from .models import ScrapedBusiness
from .navigation import NavigationManager
from .utils import (
    CandidateParseError,
    CriticalInfrastructureError,
    NavigationExhaustedError,
    SessionAborted,
    abortable_sleep,
    try_close_page,
)

logger = logging.getLogger(__name__)

MAPS_SEARCH_URL = "https://www.google.com/maps/search/"
LIST_VIEW_CAP = 3
DETAILS_VIEW_CAP = 1

DEFAULT_COUNTRY_SUFFIX = "South Africa"
DEFAULT_LOCATION_HINTS = (
    "south africa", "gauteng", "western cape", "eastern cape", "northern cape",
    "free state", "kwazulu-natal", "limpopo", "mpumalanga", "north west", "northwest",
)

PageFactory = Callable[[], Awaitable[Any]]


# ---------------------------
# Query building
# ---------------------------

def build_search_query(
    town: str,
    industry: str = "",
    *,
    country_suffix: str = DEFAULT_COUNTRY_SUFFIX,
    location_hints: Iterable[str] = DEFAULT_LOCATION_HINTS,
) -> str:
    town = (town or "").strip()
    industry = (industry or "").strip()
    low = town.lower()
    has_location = any(h and h.lower() in low for h in location_hints)
    place = town if has_location or not country_suffix else f"{town}, {country_suffix}"
    return f"{industry} in {place}" if industry else place


def build_search_url(town: str, industry: str = "", **kwargs) -> str:
    return MAPS_SEARCH_URL + quote(build_search_query(town, industry, **kwargs), safe="")


# ---------------------------
# Candidate normalisation
# ---------------------------

def _field(raw: Dict[str, Any], key: str) -> str:
    val = raw.get(key)
    return "" if val is None else str(val).strip()


def build_business(raw: Dict[str, Any], town: str, industry: str) -> ScrapedBusiness:
    if not isinstance(raw, dict):
        raise CandidateParseError(f"candidate is not a mapping: {type(raw).__name__}")
    name = _field(raw, "name")
    if not name:
        raise CandidateParseError("empty name")
    if is_opening_hours(name):
        raise CandidateParseError(f"name looks like opening hours: {name!r}")
    if looks_like_rating(name):
        raise CandidateParseError(f"name looks like a rating: {name!r}")
    if looks_like_phone_number(name):
        raise CandidateParseError(f"name looks like a phone number: {name!r}")
    return ScrapedBusiness(
        name=name,
        phone=_field(raw, "phone"),
        provider="",
        address=_field(raw, "address"),
        maps_address=_field(raw, "maps_address"),
        type_of_business=industry or _field(raw, "type_of_business") or "Business",
        town=town,
    )


def normalize_candidates(
    raws: Sequence[Dict[str, Any]], town: str, industry: str, *, limit: int = LIST_VIEW_CAP
) -> List[ScrapedBusiness]:
    """Keep valid candidates in order, skipping bad ones, up to `limit`."""
    out: List[ScrapedBusiness] = []
    for raw in raws or []:
        if len(out) >= limit:
            break
        try:
            out.append(build_business(raw, town, industry))
        except CandidateParseError as e:
            logger.debug("Skipping candidate in %s/%s: %s", town, industry, e)
        except Exception as e:
            logger.debug("Candidate parse failed in %s/%s: %s", town, industry, e)
    return out


# ---------------------------
# Worker
# ---------------------------

class BrowserWorker:
    """
    Drives one browser page through a town's industries.

    When `page_factory` is given and `simultaneous_industries` > 1, extra pages
    are opened for each town so that several industries load in parallel, and
    closed when the town is done. Otherwise industries share the worker's
    single page one at a time.
    """

    def __init__(
        self,
        page: Any,
        *,
        navigator: NavigationManager,
        error_logger: ErrorLogger,
        logging_manager: Optional[LoggingManager] = None,
        extractor: Optional[Extractor] = None,
        simultaneous_industries: int = 1,
        page_factory: Optional[PageFactory] = None,
        stop_event: Optional[asyncio.Event] = None,
        settle_ms: int = 0,
        country_suffix: str = DEFAULT_COUNTRY_SUFFIX,
        location_hints: Iterable[str] = DEFAULT_LOCATION_HINTS,
        page_close_timeout_ms: int = 1500,
    ) -> None:
        self.page = page
        self.navigator = navigator
        self.error_logger = error_logger
        self.logging_manager = logging_manager
        self.extractor = extractor or GoogleMapsExtractor()
        self.simultaneous_industries = max(1, int(simultaneous_industries))
        self.page_factory = page_factory
        self.stop_event = stop_event
        self.settle_ms = settle_ms
        self.country_suffix = country_suffix
        self.location_hints = tuple(location_hints)
        self.page_close_timeout_ms = page_close_timeout_ms
        self._pages: List[Any] = [page]
        self._extra_pages: List[Any] = []

    # ---------------- Town ----------------

    async def process_town(self, town: str, industries: Sequence[str]) -> List[ScrapedBusiness]:
        queries = list(industries) or [""]
        slots = self.simultaneous_industries if self.page_factory else 1
        slots = max(1, min(slots, len(queries)))
        try:
            await self._ensure_pages(slots)

            pool: asyncio.Queue = asyncio.Queue()
            for p in self._pages[:slots]:
                pool.put_nowait(p)

            async def _run(industry: str) -> List[ScrapedBusiness]:
                page = await pool.get()
                try:
                    return await self._industry_guarded(page, town, industry)
                finally:
                    pool.put_nowait(page)

            results = await asyncio.gather(*(_run(i) for i in queries), return_exceptions=True)
        finally:
            await self.close()

        businesses: List[ScrapedBusiness] = []
        fatal: Optional[BaseException] = None
        for res in results:
            if isinstance(res, BaseException):
                if fatal is None:
                    fatal = res
                continue
            businesses.extend(res)
        if fatal is not None:
            raise fatal
        return businesses

    async def _ensure_pages(self, n: int) -> None:
        while len(self._pages) < n and self.page_factory is not None:
            extra = await self.page_factory()
            self._pages.append(extra)
            self._extra_pages.append(extra)

    async def close(self) -> None:
        """Close pages this worker opened itself; the primary page belongs to the caller."""
        for p in self._extra_pages:
            await try_close_page(p, self.page_close_timeout_ms)
        self._pages = [self.page]
        self._extra_pages = []

    # ---------------- Industry ----------------

    async def _industry_guarded(self, page: Any, town: str, industry: str) -> List[ScrapedBusiness]:
        label = industry or "business search"
        if self.stop_event is not None and self.stop_event.is_set():
            raise SessionAborted("stopped")
        self._progress(town, industry, "scraping")
        try:
            found = await self.scrape_industry(page, town, industry)
        except (SessionAborted, asyncio.CancelledError):
            raise
        except CriticalInfrastructureError as e:
            self.error_logger.log_browser_error(e, {"town": town, "industry": industry})
            if self.logging_manager is not None:
                self.logging_manager.log_error(town, industry, f"browser failure: {e}")
            raise
        except NavigationExhaustedError as e:
            self.error_logger.log_scraping_error(town, industry, e, {"url": e.url, "attempts": e.attempts})
            if self.logging_manager is not None:
                self.logging_manager.log_error(town, industry, str(e))
            self._progress(town, industry, "failed")
            return []
        except Exception as e:
            self.error_logger.log_scraping_error(town, industry, e)
            if self.logging_manager is not None:
                self.logging_manager.log_error(town, industry, str(e) or type(e).__name__)
            self._progress(town, industry, "failed")
            return []

        logger.info("%s / %s: %d business(es)", town, label, len(found))
        self._progress(town, industry, f"completed ({len(found)})")
        return found

    async def scrape_industry(self, page: Any, town: str, industry: str) -> List[ScrapedBusiness]:
        url = build_search_url(
            town, industry, country_suffix=self.country_suffix, location_hints=self.location_hints
        )
        await self.navigator.navigate_with_retry(page, url, stop_event=self.stop_event)
        if self.settle_ms > 0:
            await abortable_sleep(self.settle_ms / 1000.0, self.stop_event)

        text = await self.extractor.page_text(page)
        if looks_like_captcha(text):
            self.error_logger.log_warning(
                "Captcha/anti-bot page detected", {"town": town, "industry": industry, "url": url}
            )
            return []

        shape = await self.extractor.detect_shape(page)
        if shape is PageShape.DETAILS:
            raw = await self.extractor.extract_details(page)
            return normalize_candidates([raw] if raw else [], town, industry, limit=DETAILS_VIEW_CAP)
        raws = await self.extractor.extract_list(page)
        return normalize_candidates(raws, town, industry, limit=LIST_VIEW_CAP)

    def _progress(self, town: str, industry: str, status: str) -> None:
        if self.logging_manager is not None:
            self.logging_manager.log_industry_progress(town, industry, status)
