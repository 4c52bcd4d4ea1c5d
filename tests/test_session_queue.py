import asyncio
from urllib.parse import unquote

import pytest

from extensions.error_logger import ErrorLogger
from scraper.config import ScrapeConfig, load_config
from scraper.extraction import PageShape
from scraper.session_queue import ScrapeService, SessionQueue
from scraper.utils import QueueCancelled


class Clock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


# ---------------- SessionQueue ----------------

@pytest.mark.asyncio
async def test_first_session_is_promoted_and_rest_wait_in_order():
    q = SessionQueue(clock=Clock())

    assert await q.enqueue("a") == 1
    assert q.active_session == "a"
    assert await q.enqueue("b") == 1
    assert await q.enqueue("c") == 2
    assert len(q) == 2
    assert "b" in q and "a" not in q

    assert await q.queue_status("a") == {"position": 0, "eta_minutes": 0.0, "currently_processing": "a"}
    assert (await q.queue_status("c"))["position"] == 2
    assert await q.queue_status("zzz") == {"position": None, "eta_minutes": None, "currently_processing": "a"}


@pytest.mark.asyncio
async def test_duplicate_ids_are_rejected():
    q = SessionQueue(clock=Clock())
    await q.enqueue("a")
    await q.enqueue("b")
    with pytest.raises(ValueError):
        await q.enqueue("a")
    with pytest.raises(ValueError):
        await q.enqueue("b")


@pytest.mark.asyncio
async def test_cancel_renumbers_remaining_entries():
    q = SessionQueue(clock=Clock())
    for sid in "abcd":
        await q.enqueue(sid)

    assert await q.cancel("c") is True
    assert await q.cancel("c") is False
    assert await q.cancel("a") is False  # active, not waiting

    entries = await q.entries()
    assert [(e.session_id, e.position) for e in entries] == [("b", 1), ("d", 2)]


@pytest.mark.asyncio
async def test_release_promotes_next_in_fifo_order():
    q = SessionQueue(clock=Clock())
    for sid in "abc":
        await q.enqueue(sid)

    await q.release("b")  # not active: ignored
    assert q.active_session == "a"
    await q.release("a")
    assert q.active_session == "b"
    assert (await q.queue_status("c"))["position"] == 1
    await q.release("b")
    await q.release("c")
    assert q.active_session is None
    assert await q.promote_next() is None


@pytest.mark.asyncio
async def test_eta_is_non_negative_and_non_decreasing():
    clock = Clock()
    q = SessionQueue(default_town_minutes=2.0, clock=clock)
    await q.enqueue("active", town_count=3)
    await q.enqueue("b", town_count=2)
    await q.enqueue("c", town_count=1)
    await q.enqueue("d", town_count=4)

    etas = [e.estimated_wait_minutes for e in await q.entries()]
    assert etas == [6.0, 10.0, 12.0]

    # the active session overruns its estimate; waits never go negative
    clock.now += 60 * 60
    etas = [e.estimated_wait_minutes for e in await q.entries()]
    assert etas == [0.0, 4.0, 6.0]
    assert all(b >= a >= 0 for a, b in zip(etas, etas[1:]))


@pytest.mark.asyncio
async def test_observed_town_durations_drive_the_estimate():
    q = SessionQueue(default_town_minutes=2.0, clock=Clock())
    assert q.avg_town_minutes == 2.0
    q.record_town_duration(30)
    q.record_town_duration(90)
    q.record_town_duration(-5)
    assert q.avg_town_minutes == pytest.approx(1.0)

    await q.enqueue("a", town_count=2)
    await q.enqueue("b")
    assert (await q.queue_status("b"))["eta_minutes"] == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_runner_mode_chains_sessions():
    order = []
    gates = {sid: asyncio.Event() for sid in "ab"}

    async def runner(sid):
        order.append(f"start:{sid}")
        await gates[sid].wait()
        order.append(f"end:{sid}")

    q = SessionQueue(runner)
    await q.enqueue("a")
    await q.enqueue("b")
    await asyncio.sleep(0)
    assert q.active_session == "a"

    gates["a"].set()
    for _ in range(50):
        if q.active_session == "b":
            break
        await asyncio.sleep(0.01)
    assert q.active_session == "b"

    gates["b"].set()
    await asyncio.wait_for(q.active_task, timeout=1)
    await asyncio.sleep(0)
    assert q.active_session is None
    assert order == ["start:a", "end:a", "start:b", "end:b"]


@pytest.mark.asyncio
async def test_runner_failure_still_frees_the_slot():
    async def runner(sid):
        if sid == "bad":
            raise RuntimeError("boom")

    q = SessionQueue(runner)
    await q.enqueue("bad")
    await q.enqueue("good")
    for _ in range(50):
        if q.active_session is None:
            break
        await asyncio.sleep(0.01)
    assert q.active_session is None
    assert len(q) == 0


# ---------------- ScrapeService ----------------

class GatedBrowser:
    """Pages whose goto() waits on `gate`, so a session can be held mid-run."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.gate.set()
        self.critical = set()

    async def new_page(self):
        return GatedPage(self)


class GatedPage:
    def __init__(self, browser):
        self.browser = browser
        self.url = ""

    async def goto(self, url, wait_until=None, timeout=None):
        await self.browser.gate.wait()
        place = unquote(url.rsplit("/", 1)[-1]).split(" in ", 1)[-1].split(",")[0]
        if place in self.browser.critical:
            raise RuntimeError("Target closed")
        self.url = url

    async def close(self):
        return None


class OneCardExtractor:
    async def detect_shape(self, page):
        return PageShape.LIST

    async def page_text(self, page):
        return ""

    async def extract_list(self, page):
        place = unquote(page.url.rsplit("/", 1)[-1])
        return [{"name": f"Shop in {place}", "phone": ""}]

    async def extract_details(self, page):
        return None


@pytest.fixture
def service_factory(monkeypatch, tmp_path):
    monkeypatch.setenv("SETTLE_AFTER_NAV_MS", "0")
    monkeypatch.setenv("NAV_MAX_RETRIES", "1")
    monkeypatch.setenv("NAV_BASE_DELAY_MS", "0")

    def _make(browser):
        return ScrapeService(
            page_factory=browser.new_page,
            error_logger=ErrorLogger(),
            cfg=load_config(),
            extractor_factory=OneCardExtractor,
            output_root=tmp_path,
        )

    return _make


def _cfg(*towns):
    return ScrapeConfig(towns=towns, industries=("Bakeries",), simultaneous_towns=1, skip_provider_lookup=True)


@pytest.mark.asyncio
async def test_service_runs_sessions_one_at_a_time(service_factory, tmp_path):
    browser = GatedBrowser()
    browser.gate.clear()
    svc = service_factory(browser)

    first = await svc.start(_cfg("Paarl"))
    second = await svc.start(_cfg("Ceres", "Worcester"))

    assert (await svc.queue_status(first))["position"] == 0
    assert (await svc.queue_status(second))["position"] == 1
    assert svc.status(second)["status"] == "queued"

    browser.gate.set()
    assert len(await asyncio.wait_for(svc.wait(first), timeout=5)) == 1
    results = await asyncio.wait_for(svc.wait(second), timeout=5)
    assert [b.town for b in results] == ["Ceres", "Worcester"]

    st = svc.status(second)
    assert st["status"] == "completed"
    assert st["progress"]["percentage"] == 100.0
    assert st["recent_logs"] and set(st["recent_logs"][0]) == {"timestamp", "level", "message"}
    assert (tmp_path / second / "checkpoints" / "progress.json").exists()
    assert svc.sessions() == [first, second]


@pytest.mark.asyncio
async def test_stopping_a_queued_session_cancels_it(service_factory):
    browser = GatedBrowser()
    browser.gate.clear()
    svc = service_factory(browser)

    first = await svc.start(_cfg("Paarl"))
    second = await svc.start(_cfg("Ceres"))

    assert await svc.stop(second) is True
    assert svc.status(second)["status"] == "cancelled"
    with pytest.raises(QueueCancelled):
        await svc.wait(second)

    # let the first session reach the gated page load
    for _ in range(100):
        if svc.status(first)["status"] == "running":
            break
        await asyncio.sleep(0.01)
    assert await svc.stop(first) is True
    browser.gate.set()
    await asyncio.wait_for(svc.wait(first), timeout=5)
    assert svc.status(first)["status"] == "stopped"
    assert await svc.stop(first) is False


@pytest.mark.asyncio
async def test_stop_right_after_start_is_not_lost(service_factory):
    browser = GatedBrowser()
    svc = service_factory(browser)

    sid = await svc.start(_cfg("Paarl", "Ceres", "Worcester"))
    # promoted, but its run task has not had a chance to begin
    assert svc.get_orchestrator(sid).get_status() == "idle"
    assert svc.status(sid)["status"] == "running"

    assert await svc.stop(sid) is True
    assert svc.status(sid)["status"] == "stopping"

    assert await asyncio.wait_for(svc.wait(sid), timeout=5) == []
    st = svc.status(sid)
    assert st["status"] == "stopped"
    assert st["progress"]["completed_towns"] == 0
    assert await svc.stop(sid) is False


@pytest.mark.asyncio
async def test_retry_failed_reuses_the_session(service_factory):
    browser = GatedBrowser()
    browser.critical.add("Ceres")
    svc = service_factory(browser)

    sid = await svc.start(_cfg("Paarl", "Ceres"))
    await asyncio.wait_for(svc.wait(sid), timeout=5)
    orch = svc.get_orchestrator(sid)
    assert orch.get_failed_towns() == ["Ceres"]

    browser.critical.clear()
    found = await asyncio.wait_for(svc.retry_failed(sid), timeout=5)

    assert [b.town for b in found] == ["Ceres"]
    assert orch.get_failed_towns() == []
    assert await svc.retry_failed(sid) == []


@pytest.mark.asyncio
async def test_unknown_session_raises_key_error(service_factory):
    svc = service_factory(GatedBrowser())
    with pytest.raises(KeyError):
        svc.status("nope")
    with pytest.raises(KeyError):
        await svc.queue_status("nope")
