import asyncio
from urllib.parse import unquote

import pytest

from extensions.checkpoint import SessionCheckpoint
from extensions.error_logger import ErrorLogger
from extensions.logging import LoggingExtension, current_town
from scraper import orchestrator as orch_mod
from scraper.config import NavigationOptions, ScrapeConfig
from scraper.events import (
    BusinessEvent,
    CompleteEvent,
    ErrorEvent,
    LogEvent,
    LookupCompleteEvent,
    LookupProgressEvent,
    ProgressEvent,
    StoppedEvent,
    TownCompleteEvent,
)
from scraper.extraction import PageShape
from scraper.orchestrator import ScrapingOrchestrator
from scraper.provider_lookup import ProviderLookupService

FAST_NAV = NavigationOptions(max_retries=1, base_delay_ms=0)


# ---------------- Stubs ----------------

class FakeBrowser:
    """Hands out pages; towns or full queries listed in `critical` make goto() fail as if the browser died."""

    def __init__(self, critical=(), delay=0.0, fail_open=False):
        self.critical = set(critical)
        self.delay = delay
        self.fail_open = fail_open
        self.pages = []
        self.visited = []

    async def new_page(self):
        if self.fail_open:
            raise RuntimeError("browser not launched")
        page = FakePage(self)
        self.pages.append(page)
        return page


class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self.url = ""
        self.closed = False

    async def goto(self, url, wait_until=None, timeout=None):
        await asyncio.sleep(self.browser.delay)
        query = unquote(url.rsplit("/", 1)[-1])
        self.browser.visited.append(query)
        if query in self.browser.critical or query.split(" in ", 1)[-1] in self.browser.critical:
            raise RuntimeError("Target page, context or browser has been closed")
        self.url = url

    async def close(self):
        self.closed = True


class CardExtractor:
    """Two cards per results page, with unique phone numbers."""

    counter = 0

    async def detect_shape(self, page):
        return PageShape.LIST

    async def page_text(self, page):
        return "results"

    async def extract_list(self, page):
        query = unquote(page.url.rsplit("/", 1)[-1])
        cards = []
        for i in range(2):
            CardExtractor.counter += 1
            cards.append({"name": f"{query} #{i}", "phone": f"082{CardExtractor.counter:07d}"})
        return cards

    async def extract_details(self, page):
        return None


class ProviderBackend:
    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call

    async def lookup_batch(self, numbers, stop_event=None):
        if self.on_call is not None:
            self.on_call()
        self.calls.append(list(numbers))
        return {n: "Vodacom" for n in numbers}


def _orchestrator(browser, towns, industries=("Plumbers",), *, backend=None, skip_lookup=False, **kw):
    cfg = ScrapeConfig(
        towns=tuple(towns),
        industries=tuple(industries),
        simultaneous_towns=kw.pop("simultaneous_towns", 1),
        skip_provider_lookup=skip_lookup,
    )
    lookup = ProviderLookupService(backend) if backend is not None else None
    return ScrapingOrchestrator(
        cfg,
        page_factory=browser.new_page,
        lookup_service=lookup,
        error_logger=kw.pop("error_logger", ErrorLogger()),
        navigation_options=FAST_NAV,
        extractor_factory=CardExtractor,
        country_suffix="",
        **kw,
    )


async def _collect(orch):
    return [ev async for ev in orch.iter_events()]


async def _run_and_collect(orch, coro=None):
    collector = asyncio.create_task(_collect(orch))
    await (coro if coro is not None else orch.start())
    return await asyncio.wait_for(collector, timeout=5)


def _of(events, kind):
    return [e for e in events if isinstance(e, kind)]


# ---------------- Tests ----------------

@pytest.mark.asyncio
async def test_full_run_scrapes_towns_then_looks_up_providers():
    browser = FakeBrowser()
    holder = {}

    def _check_scrape_finished():
        # the lookup must only start once every town is done
        holder.setdefault("completed_at_lookup", holder["orch"].get_progress().completed_towns)

    backend = ProviderBackend(on_call=_check_scrape_finished)
    orch = _orchestrator(browser, ["Paarl", "Worcester"], backend=backend)
    holder["orch"] = orch

    events = await _run_and_collect(orch)

    assert orch.get_status() == orch_mod.COMPLETED
    results = orch.get_results()
    assert len(results) == 4
    assert {b.town for b in results} == {"Paarl", "Worcester"}
    assert all(b.provider == "Vodacom" for b in results)
    assert holder["completed_at_lookup"] == 2
    assert orch.lookup_started_at is not None

    assert orch.get_successful_towns() == ["Paarl", "Worcester"]
    assert orch.get_failed_towns() == []
    assert len(_of(events, BusinessEvent)) == 4
    assert _of(events, LogEvent)

    pct = [e.progress.percentage for e in _of(events, ProgressEvent)]
    assert pct == sorted(pct)
    assert pct[-1] == 100.0

    kinds = [type(e) for e in events]
    last_town = max(i for i, k in enumerate(kinds) if k is TownCompleteEvent)
    complete = kinds.index(CompleteEvent)
    first_lookup = kinds.index(LookupProgressEvent)
    lookup_done = kinds.index(LookupCompleteEvent)
    assert last_town < complete < first_lookup < lookup_done
    assert _of(events, LookupCompleteEvent)[0].updated_businesses == 4


@pytest.mark.asyncio
async def test_skip_provider_lookup():
    backend = ProviderBackend()
    orch = _orchestrator(FakeBrowser(), ["Paarl"], backend=backend, skip_lookup=True)

    events = await _run_and_collect(orch)

    assert backend.calls == []
    assert all(b.provider == "" for b in orch.get_results())
    assert not _of(events, LookupCompleteEvent)
    assert orch.get_status() == orch_mod.COMPLETED


@pytest.mark.asyncio
async def test_towns_spread_over_parallel_workers():
    browser = FakeBrowser(delay=0.01)
    orch = _orchestrator(browser, ["A", "B", "C", "D"], skip_lookup=True, simultaneous_towns=2)

    await orch.start()

    assert len(browser.pages) == 2
    assert sorted(orch.get_successful_towns()) == ["A", "B", "C", "D"]
    stats = orch.get_navigation_statistics()
    assert len(stats) == 2
    assert sum(s["navigation_count"] for s in stats) == 4
    assert all(p.closed for p in browser.pages)


@pytest.mark.asyncio
async def test_critical_failure_fails_town_and_retry_recovers():
    browser = FakeBrowser(critical={"Paarl"})
    errors = ErrorLogger()
    backend = ProviderBackend()
    orch = _orchestrator(browser, ["Ceres", "Paarl", "Worcester"], backend=backend, error_logger=errors)

    events = await _run_and_collect(orch)

    assert orch.get_status() == orch_mod.COMPLETED
    assert orch.get_successful_towns() == ["Ceres"]
    # the only worker died on Paarl, so Worcester is failed too
    assert orch.get_failed_towns() == ["Paarl", "Worcester"]
    assert orch.get_progress().percentage == 100.0
    assert errors.get_error_logs_by_category("browser")
    assert any(e.fatal and e.town == "Paarl" for e in _of(events, ErrorEvent))
    failed = [e for e in _of(events, TownCompleteEvent) if not e.success]
    assert [e.town for e in failed] == ["Paarl", "Worcester"]

    browser.critical.clear()
    backend.calls.clear()
    retry_events = await _run_and_collect(orch, orch.retry_failed_towns())

    recovered = orch.get_results()[2:]
    assert len(recovered) == 4
    assert {b.town for b in recovered} == {"Paarl", "Worcester"}
    assert orch.get_failed_towns() == []
    assert orch.get_successful_towns() == ["Ceres", "Paarl", "Worcester"]
    # only the new numbers go through the lookup
    looked_up = [n for batch in backend.calls for n in batch]
    assert sorted(looked_up) == sorted(b.phone for b in recovered)
    assert _of(retry_events, CompleteEvent)


@pytest.mark.asyncio
async def test_retry_with_nothing_failed_is_a_no_op():
    orch = _orchestrator(FakeBrowser(), ["Paarl"], skip_lookup=True)
    await orch.start()
    assert await orch.retry_failed_towns() == []


@pytest.mark.asyncio
async def test_page_factory_failure_fails_every_town():
    errors = ErrorLogger()
    orch = _orchestrator(FakeBrowser(fail_open=True), ["Paarl", "Worcester"], skip_lookup=True, error_logger=errors)

    events = await _run_and_collect(orch)

    assert orch.get_failed_towns() == ["Paarl", "Worcester"]
    assert orch.get_progress().percentage == 100.0
    assert errors.get_error_logs_by_category("browser")
    assert any(e.fatal for e in _of(events, ErrorEvent))


@pytest.mark.asyncio
async def test_stop_after_first_town():
    holder = {}
    backend = ProviderBackend()
    orch = _orchestrator(
        FakeBrowser(), ["A", "B", "C"], backend=backend,
        on_town_duration=lambda _s: holder["orch"].stop(),
    )
    holder["orch"] = orch

    events = await _run_and_collect(orch)

    assert orch.get_status() == orch_mod.STOPPED
    assert orch.get_successful_towns() == ["A"]
    assert backend.calls == []
    stopped = _of(events, StoppedEvent)
    assert len(stopped) == 1
    assert stopped[0].completed_towns == 1
    assert stopped[0].total_towns == 3
    assert not _of(events, CompleteEvent)


@pytest.mark.asyncio
async def test_pause_holds_workers_until_resume():
    holder = {}

    def _pause_once(_s):
        if not holder.get("paused"):
            holder["paused"] = holder["orch"].pause()

    orch = _orchestrator(FakeBrowser(), ["A", "B"], skip_lookup=True, on_town_duration=_pause_once)
    holder["orch"] = orch
    assert orch.pause() is False

    task = asyncio.create_task(orch.start())
    for _ in range(200):
        if orch.get_status() == orch_mod.PAUSED:
            break
        await asyncio.sleep(0.01)
    assert orch.get_status() == orch_mod.PAUSED
    await asyncio.sleep(0.05)
    assert orch.get_progress().completed_towns == 1
    assert orch.pause() is False

    assert orch.resume() is True
    await asyncio.wait_for(task, timeout=5)
    assert orch.get_status() == orch_mod.COMPLETED
    assert orch.get_progress().completed_towns == 2
    assert orch.resume() is False


@pytest.mark.asyncio
async def test_stop_while_paused_ends_run():
    holder = {}
    orch = _orchestrator(
        FakeBrowser(), ["A", "B", "C"], skip_lookup=True,
        on_town_duration=lambda _s: holder["orch"].pause(),
    )
    holder["orch"] = orch

    task = asyncio.create_task(orch.start())
    for _ in range(200):
        if orch.get_status() == orch_mod.PAUSED:
            break
        await asyncio.sleep(0.01)
    orch.stop()
    await asyncio.wait_for(task, timeout=5)
    assert orch.get_status() == orch_mod.STOPPED
    assert orch.get_successful_towns() == ["A"]


@pytest.mark.asyncio
async def test_cancel_before_start_closes_event_channel():
    orch = _orchestrator(FakeBrowser(), ["A"], skip_lookup=True)
    orch.cancel()

    events = await asyncio.wait_for(_collect(orch), timeout=1)

    assert orch.get_status() == orch_mod.STOPPED
    assert [type(e) for e in events] == [StoppedEvent]
    assert events[0].reason == "cancelled"


@pytest.mark.asyncio
async def test_checkpoint_and_town_log_files(tmp_path):
    browser = FakeBrowser()
    checkpoint = SessionCheckpoint("s1", root=tmp_path)
    log_ext = LoggingExtension("s1", output_root=tmp_path)
    seen_context = []

    class ContextExtractor(CardExtractor):
        async def page_text(self, page):
            seen_context.append(current_town())
            return "results"

    orch = _orchestrator(browser, ["Paarl"], skip_lookup=True, session_id="s1",
                         checkpoint=checkpoint, log_ext=log_ext)
    orch.extractor_factory = ContextExtractor
    try:
        await orch.start()
    finally:
        log_ext.close()

    assert checkpoint.data["stage"] == "done"
    assert checkpoint.data["finished_at"] is not None
    assert checkpoint.data["towns_done"] == ["Paarl"]
    assert checkpoint.data["towns_failed"] == []
    assert checkpoint.data["businesses"] == 2
    assert (tmp_path / "s1" / "checkpoints" / "progress.json").exists()
    assert (tmp_path / "s1" / "logs" / "paarl.log").exists()
    assert seen_context == [("s1", "Paarl")]
    assert current_town() is None

@pytest.mark.asyncio
async def test_stop_before_start_ends_run_without_visiting_towns():
    browser = FakeBrowser()
    backend = ProviderBackend()
    orch = _orchestrator(browser, ["A", "B"], backend=backend)

    assert orch.stop() is True
    assert orch.get_status() == orch_mod.IDLE
    events = await _run_and_collect(orch)

    assert orch.get_status() == orch_mod.STOPPED
    assert browser.visited == []
    assert backend.calls == []
    assert orch.get_results() == []
    assert [type(e) for e in events if not isinstance(e, LogEvent)] == [StoppedEvent]
    assert events[-1].total_towns == 2
    assert orch.stop() is False


@pytest.mark.asyncio
async def test_stop_during_lookup_skips_remaining_batches():
    holder = {}
    backend = ProviderBackend(on_call=lambda: holder["orch"].stop())
    towns = ["A", "B", "C", "D", "E", "F"]
    orch = _orchestrator(FakeBrowser(), towns, backend=backend)
    holder["orch"] = orch

    events = await _run_and_collect(orch)

    # 12 numbers make three batches of five; only the first one ran
    assert len(backend.calls) == 1
    assert orch.get_status() == orch_mod.STOPPED
    assert _of(events, CompleteEvent)
    assert not _of(events, LookupCompleteEvent)
    assert len(_of(events, StoppedEvent)) == 1
    providers = [b.provider for b in orch.get_results()]
    assert len(providers) == 12
    assert providers.count("Vodacom") == 5
    assert providers.count("") == 7


@pytest.mark.asyncio
async def test_failed_town_publishes_no_businesses():
    # Plumbers loads in Paarl before Glass takes the browser down
    browser = FakeBrowser(critical={"Glass in Paarl"})
    orch = _orchestrator(browser, ["Worcester", "Paarl"], industries=("Plumbers", "Glass"), skip_lookup=True)

    events = await _run_and_collect(orch)

    assert "Plumbers in Paarl" in browser.visited
    assert orch.get_failed_towns() == ["Paarl"]
    published = _of(events, BusinessEvent)
    assert len(published) == 4
    assert {e.business.town for e in published} == {"Worcester"}
    assert {b.town for b in orch.get_results()} == {"Worcester"}
    kinds = [type(e) for e in events]
    worcester_done = next(
        i for i, e in enumerate(events) if isinstance(e, TownCompleteEvent) and e.town == "Worcester"
    )
    assert max(i for i, k in enumerate(kinds) if k is BusinessEvent) < worcester_done
