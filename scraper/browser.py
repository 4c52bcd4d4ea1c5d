from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Tuple

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright, Page

from .config import Config
from .utils import CriticalInfrastructureError

logger = logging.getLogger(__name__)

# ---------------------------
# Module-scoped active state
# ---------------------------
_ACTIVE: dict[str, Any] = {
    "cfg": None,
    "pw": None,
    "browser": None,
    "context": None,
    "open_pages": 0,
    "loop_old_ex_handler": None,
}

# Benign/expected aborts we don't want to spam logs for
_SILENCE_PATTERNS = (
    "net::ERR_ABORTED",
    "frame was detached",
    "Target closed",
    "Target page, context or browser has been closed",
    "Execution context was destroyed",
    "Navigation failed because page was closed",
    "TargetClosedError",
)

_CONTEXT_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}


def _browser_args(cfg: Config) -> list[str]:
    args: list[str] = [
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--mute-audio",
        "--no-default-browser-check",
        "--no-first-run",
        "--disable-default-apps",
        "--disable-features=TranslateUI",
        "--disable-gpu",
    ]
    for a in getattr(cfg, "browser_args_extra", None) or ():
        if isinstance(a, str) and a.strip():
            args.append(a.strip())
    return args


def _install_loop_exception_silencer() -> None:
    """
    Suppress noisy loop-level 'Future exception was never retrieved' logs for
    Playwright failures the workers already handle.
    """
    loop = asyncio.get_running_loop()
    prev = loop.get_exception_handler()
    _ACTIVE["loop_old_ex_handler"] = prev

    def _handler(_loop, context: dict):
        exc = context.get("exception")
        text = f"{exc!r}" if exc else context.get("message", "")
        if text and any(p in text for p in _SILENCE_PATTERNS):
            logger.debug("Suppressed loop exception: %s", text)
            return
        if prev:
            prev(_loop, context)
        else:
            _loop.default_exception_handler(context)

    loop.set_exception_handler(_handler)


def _restore_loop_exception_handler() -> None:
    try:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_ACTIVE.get("loop_old_ex_handler"))
    except Exception:
        pass


async def _install_request_blocking(context: BrowserContext) -> None:
    async def route_handler(route, request):
        if request.resource_type in {"image", "media", "font"}:
            return await route.abort()
        return await route.continue_()
    await context.route("**/*", route_handler)


async def new_context(browser: Browser, cfg: Config) -> BrowserContext:
    context = await browser.new_context(
        user_agent=cfg.user_agent,
        viewport={"width": 1366, "height": 900},
        java_script_enabled=True,
        locale="en-US",
        extra_http_headers=dict(_CONTEXT_HEADERS),
    )
    context.set_default_timeout(cfg.navigation.max_timeout_ms)
    context.set_default_navigation_timeout(cfg.navigation.max_timeout_ms)
    if getattr(cfg, "block_heavy_resources", True):
        await _install_request_blocking(context)
    return context


async def init_browser(cfg: Config) -> Tuple[Playwright, Browser, BrowserContext]:
    proxy = {"server": cfg.proxy_server} if getattr(cfg, "proxy_server", None) else None

    pw = await async_playwright().start()
    browser = await pw.chromium.launch(
        headless=getattr(cfg, "headless", True),
        args=_browser_args(cfg),
        proxy=proxy,
        slow_mo=getattr(cfg, "browser_slow_mo_ms", 0) or 0,
    )
    context = await new_context(browser, cfg)

    _ACTIVE.update({
        "cfg": cfg,
        "pw": pw,
        "browser": browser,
        "context": context,
        "open_pages": 0,
    })
    _install_loop_exception_silencer()

    logger.info(
        "Browser initialized UA=%s proxy=%s headless=%s block_heavy=%s",
        cfg.user_agent, bool(proxy), getattr(cfg, "headless", True),
        getattr(cfg, "block_heavy_resources", True),
    )
    return pw, browser, context


async def shutdown_browser(
    pw: Playwright, browser: Browser, context: Optional[BrowserContext] = None
) -> None:
    try:
        if context:
            await context.close()
    except Exception as e:
        logger.warning("Error while closing context: %s", e)

    try:
        await browser.close()
    except Exception as e:
        logger.warning("Error while closing browser: %s", e)

    try:
        await pw.stop()
    except Exception as e:
        logger.warning("Error while stopping Playwright: %s", e)

    _restore_loop_exception_handler()
    for k in list(_ACTIVE.keys()):
        _ACTIVE[k] = None
    _ACTIVE["open_pages"] = 0


# ---------------------------
# Page utilities
# ---------------------------

def _active_context() -> BrowserContext:
    ctx = _ACTIVE.get("context")
    if ctx is None:
        raise RuntimeError("Browser context not initialized")
    return ctx


def open_page_count() -> int:
    return int(_ACTIVE.get("open_pages") or 0)


def _on_page_closed(page: Page) -> None:
    if getattr(page, "_release_done", False):
        return
    setattr(page, "_release_done", True)
    _ACTIVE["open_pages"] = max(0, open_page_count() - 1)


async def new_page(context: Optional[BrowserContext] = None) -> Page:
    """
    Open a page on `context` (or the active one). A dead browser surfaces as
    CriticalInfrastructureError so only the calling worker halts.
    """
    ctx = context if context is not None else _active_context()
    try:
        page = await ctx.new_page()
    except Exception as e:
        logger.error("Context.new_page failed: %s", e)
        raise CriticalInfrastructureError(f"cannot open page: {e}") from e

    _ACTIVE["open_pages"] = open_page_count() + 1
    setattr(page, "_release_done", False)
    # tests supply a StubPage with .on; real Playwright has .on too
    page.on("close", lambda *_: _on_page_closed(page))
    return page

