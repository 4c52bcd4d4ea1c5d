from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from extensions.checkpoint import SessionCheckpoint
from extensions.error_logger import ErrorLogger
from extensions.logging import LoggingExtension
from extensions.logging_manager import LogEntry, LoggingManager

from .config import NavigationOptions, ScrapeConfig
from .events import (
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
from .extraction import Extractor
from .models import ProgressState, ScrapedBusiness
from .navigation import NavigationManager
from .provider_lookup import ProviderLookupService, clean_phone_number
from .utils import CriticalInfrastructureError, SessionAborted, try_close_page
from .worker import DEFAULT_COUNTRY_SUFFIX, DEFAULT_LOCATION_HINTS, BrowserWorker

logger = logging.getLogger(__name__)

PageFactory = Callable[[], Awaitable[Any]]

IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"
STOPPING = "stopping"
STOPPED = "stopped"
COMPLETED = "completed"
ERROR = "error"

_ACTIVE_STATUSES = (RUNNING, PAUSED, STOPPING)


class ScrapingOrchestrator:
    """
    Fans a run's towns out over a pool of browser workers.

    Each worker task owns one page, one NavigationManager and one
    BrowserWorker, and pulls towns from a shared FIFO queue. When every worker
    is done the collected phone numbers go through one provider lookup pass.
    Progress and results are published on `events`, a queue closed with a
    ``None`` sentinel at the end of each run.
    """

    def __init__(
        self,
        config: ScrapeConfig,
        *,
        page_factory: PageFactory,
        lookup_service: Optional[ProviderLookupService] = None,
        error_logger: Optional[ErrorLogger] = None,
        logging_manager: Optional[LoggingManager] = None,
        navigation_options: Optional[NavigationOptions] = None,
        extractor_factory: Optional[Callable[[], Extractor]] = None,
        session_id: Optional[str] = None,
        log_ext: Optional[LoggingExtension] = None,
        checkpoint: Optional[SessionCheckpoint] = None,
        settle_ms: int = 0,
        country_suffix: str = DEFAULT_COUNTRY_SUFFIX,
        location_hints: Iterable[str] = DEFAULT_LOCATION_HINTS,
        page_close_timeout_ms: int = 1500,
        on_town_duration: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex
        self.page_factory = page_factory
        self.lookup_service = lookup_service
        self.error_logger = error_logger or ErrorLogger()
        self.logging_manager = logging_manager or LoggingManager()
        self.navigation_options = navigation_options or NavigationOptions()
        self.extractor_factory = extractor_factory
        self.log_ext = log_ext
        self.checkpoint = checkpoint
        self.settle_ms = settle_ms
        self.country_suffix = country_suffix
        self.location_hints = tuple(location_hints)
        self.page_close_timeout_ms = page_close_timeout_ms
        self.on_town_duration = on_town_duration
        self._clock = clock

        self.status = IDLE
        self.events: asyncio.Queue = asyncio.Queue()
        self._channel_closed = False
        self.lookup_started_at: Optional[float] = None
        self.navigators: List[NavigationManager] = []

        self._results: List[ScrapedBusiness] = []
        self._successful: List[str] = []
        self._failed: List[str] = []
        self._progress = ProgressState(total_towns=len(config.towns))
        self._progress.recompute()
        self._progress_lock = asyncio.Lock()
        self._town_durations: List[float] = []
        self._pool_size = 1

        self._stop = asyncio.Event()
        self._resume = asyncio.Event()
        self._resume.set()

        if self.logging_manager.on_log is None:
            self.logging_manager.on_log = self._relay_log

    # ---------------- Run control ----------------

    async def start(self) -> List[ScrapedBusiness]:
        """Scrape every configured town, then resolve providers. Returns the results."""
        await self._run(list(self.config.towns))
        return self.get_results()

    async def retry_failed_towns(self) -> List[ScrapedBusiness]:
        """Re-run only the towns that failed; returns the businesses found this time."""
        if self.status in _ACTIVE_STATUSES:
            raise RuntimeError(f"run already in progress (status={self.status})")
        towns = list(self._failed)
        if not towns:
            return []
        before = len(self._results)
        self._failed = []
        self.logging_manager.log_message(f"Retrying {len(towns)} failed town(s)", "info")
        await self._run(towns, lookup_from=before)
        return list(self._results[before:])

    def pause(self) -> bool:
        if self.status != RUNNING:
            return False
        self._resume.clear()
        self.status = PAUSED
        self.logging_manager.log_message("Scraping paused", "warning")
        return True

    def resume(self) -> bool:
        if self.status != PAUSED:
            return False
        self.status = RUNNING
        self._resume.set()
        self.logging_manager.log_message("Scraping resumed", "info")
        return True

    def stop(self) -> bool:
        """
        Request a stop. Returns False when there is nothing left to stop.

        A stop that arrives before the run starts is kept and ends the run
        as soon as it begins.
        """
        if self.status == IDLE:
            if not self._stop.is_set():
                self._stop.set()
                self.logging_manager.log_message("Stop requested before start", "warning")
            return True
        if self.status not in _ACTIVE_STATUSES:
            return False
        if self.status != STOPPING:
            self.status = STOPPING
            self.logging_manager.log_message("Stop requested", "warning")
        self._stop.set()
        # wake paused workers so they can observe the stop
        self._resume.set()
        return True

    def cancel(self) -> None:
        """Close a run that never started."""
        if self.status != IDLE:
            return
        self.status = STOPPED
        self._publish(StoppedEvent(reason="cancelled", total_towns=len(self.config.towns)))
        self._close_channel()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop

    # ---------------- Queries ----------------

    def get_status(self) -> str:
        return self.status

    def get_results(self) -> List[ScrapedBusiness]:
        return list(self._results)

    def get_progress(self) -> ProgressState:
        return self._progress.snapshot()

    def get_failed_towns(self) -> List[str]:
        return list(self._failed)

    def get_successful_towns(self) -> List[str]:
        return list(self._successful)

    def get_navigation_statistics(self) -> List[Dict[str, Any]]:
        return [n.get_statistics() for n in self.navigators]

    async def iter_events(self) -> AsyncIterator[Any]:
        while True:
            ev = await self.events.get()
            if ev is None:
                return
            yield ev

    # ---------------- Run ----------------

    async def _run(self, towns: Sequence[str], *, lookup_from: int = 0) -> None:
        if self.status in _ACTIVE_STATUSES:
            raise RuntimeError(f"run already in progress (status={self.status})")
        self._open_channel()
        if self.status == IDLE and self._stop.is_set():
            self.status = STOPPED
            self.logging_manager.log_message("Scraping stopped before it started", "warning")
            self._publish(StoppedEvent(total_towns=len(towns)))
            self._close_channel()
            return
        self._stop.clear()
        self._resume.set()
        self.status = RUNNING
        try:
            if self.checkpoint is not None:
                await self.checkpoint.mark_start(towns)
            await self._run_towns(towns)

            if self._stop.is_set():
                self._finish_stopped()
                return

            self._log_run_summary()
            self._publish(CompleteEvent(
                total_businesses=len(self._results),
                successful_towns=tuple(self._successful),
                failed_towns=tuple(self._failed),
            ))

            if not self.config.skip_provider_lookup and not self._stop.is_set():
                await self._lookup_phase(lookup_from)

            if self._stop.is_set():
                self._finish_stopped()
                return

            if self.checkpoint is not None:
                await self.checkpoint.mark_finished()
            self.status = COMPLETED
        except Exception as e:
            self.status = ERROR
            logger.exception("Scraping run %s failed", self.session_id)
            self.error_logger.log_error("scraping run failed", e, {"session_id": self.session_id})
            self._publish(ErrorEvent(message=str(e) or type(e).__name__, fatal=True))
            raise
        finally:
            self._close_channel()

    def _finish_stopped(self) -> None:
        self.status = STOPPED
        self.logging_manager.log_message("Scraping stopped", "warning")
        self._publish(StoppedEvent(
            completed_towns=self._progress.completed_towns,
            total_towns=self._progress.total_towns,
        ))

    async def _run_towns(self, towns: Sequence[str]) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for t in towns:
            queue.put_nowait(t)

        n_industries = max(1, len(self.config.industries))
        self._progress = ProgressState(
            total_towns=len(towns),
            total_industries=len(towns) * n_industries,
            businesses_scraped=len(self._results),
        )
        self._progress.recompute()
        self._pool_size = max(1, min(self.config.simultaneous_towns, len(towns)))

        self.logging_manager.log_message(
            f"Starting scrape of {len(towns)} town(s) x {n_industries} industr(y/ies) "
            f"with {self._pool_size} worker(s)",
            "info",
        )

        workers = [
            asyncio.create_task(self._worker_loop(i, queue), name=f"town-worker-{i}")
            for i in range(self._pool_size)
        ]
        results = await asyncio.gather(*workers, return_exceptions=True)
        for i, res in enumerate(results):
            if isinstance(res, BaseException):
                logger.error("Worker %d ended with %r", i, res)

        if self._stop.is_set():
            return
        # every worker died on infrastructure failures; nothing will pick these up
        while not queue.empty():
            town = queue.get_nowait()
            self.logging_manager.log_error(town, "", "no healthy browser worker left")
            await self._finish_town(town, [], "no healthy browser worker left", self._clock())

    async def _worker_loop(self, worker_id: int, queue: asyncio.Queue) -> None:
        try:
            page = await self.page_factory()
        except Exception as e:
            self.error_logger.log_browser_error(e, {"worker": worker_id, "stage": "open_page"})
            self._publish(ErrorEvent(message=f"worker {worker_id} could not open a page: {e}", fatal=True))
            return

        navigator = NavigationManager(self.navigation_options, error_logger=self.error_logger)
        self.navigators.append(navigator)
        worker = BrowserWorker(
            page,
            navigator=navigator,
            error_logger=self.error_logger,
            logging_manager=self.logging_manager,
            extractor=self.extractor_factory() if self.extractor_factory else None,
            simultaneous_industries=self.config.simultaneous_industries,
            page_factory=self.page_factory,
            stop_event=self._stop,
            settle_ms=self.settle_ms,
            country_suffix=self.country_suffix,
            location_hints=self.location_hints,
            page_close_timeout_ms=self.page_close_timeout_ms,
        )
        try:
            while not self._stop.is_set():
                await self._resume.wait()
                if self._stop.is_set():
                    break
                try:
                    town = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if not await self._process_town(worker, town):
                    break
        finally:
            await worker.close()
            await try_close_page(page, self.page_close_timeout_ms)
            logger.debug("Worker %d exited", worker_id)

    async def _process_town(self, worker: BrowserWorker, town: str) -> bool:
        """Scrape one town. Returns False when this worker must stop."""
        token = self.log_ext.set_town_context(town) if self.log_ext is not None else None
        started = self._clock()
        async with self._progress_lock:
            self._progress.current_town = town
        self.logging_manager.log_town_start(town)
        try:
            found = await worker.process_town(town, self.config.industries)
        except SessionAborted:
            self.logging_manager.log_message(f"Abandoned {town} on stop", "warning")
            return False
        except CriticalInfrastructureError as e:
            # BrowserWorker already recorded the browser error
            self._publish(ErrorEvent(message=str(e), town=town, fatal=True))
            await self._finish_town(town, [], str(e), started)
            return False
        except Exception as e:
            msg = str(e) or type(e).__name__
            self.error_logger.log_scraping_error(town, "", e, {"stage": "town"})
            self.logging_manager.log_error(town, "", msg)
            self._publish(ErrorEvent(message=msg, town=town))
            await self._finish_town(town, [], msg, started)
            return True
        finally:
            if token is not None:
                self.log_ext.reset_town_context(token)

        await self._finish_town(town, found, None, started)
        return True

    async def _finish_town(
        self, town: str, found: List[ScrapedBusiness], error: Optional[str], started: float
    ) -> None:
        duration = max(0.0, self._clock() - started)
        async with self._progress_lock:
            if error is None:
                self._results.extend(found)
                if town not in self._successful:
                    self._successful.append(town)
                self.logging_manager.log_town_complete(town, len(found))
            elif town not in self._failed:
                self._failed.append(town)
            self._town_durations.append(duration)
            if error is None:
                # only towns that finished cleanly reach subscribers
                for b in found:
                    self._publish(BusinessEvent(b))

            p = self._progress
            p.completed_towns += 1
            p.completed_industries = min(
                p.total_industries, p.completed_industries + max(1, len(self.config.industries))
            )
            p.businesses_scraped = len(self._results)
            p.recompute()
            p.estimated_time_remaining_s = self._estimate_remaining_s(p.towns_remaining)
            snapshot = p.snapshot()

            self._publish(TownCompleteEvent(
                town=town,
                lead_count=len(found),
                success=error is None,
                duration_s=duration,
                error=error,
            ))
            self._publish(ProgressEvent(progress=snapshot, town=town))

        if self.on_town_duration is not None:
            self.on_town_duration(duration)
        if self.checkpoint is not None:
            if error is None:
                await self.checkpoint.mark_town_done(town, len(found))
            else:
                await self.checkpoint.mark_town_failed(town, error)

    def _estimate_remaining_s(self, towns_remaining: int) -> float:
        if not self._town_durations or towns_remaining <= 0:
            return 0.0
        avg = sum(self._town_durations) / len(self._town_durations)
        return round(avg * towns_remaining / self._pool_size, 1)

    # ---------------- Provider lookup ----------------

    async def _lookup_phase(self, start_index: int) -> None:
        svc = self.lookup_service
        phones = [b.phone for b in self._results[start_index:] if b.phone]
        if svc is None or not phones:
            self._publish(LookupCompleteEvent())
            return

        if self.checkpoint is not None:
            await self.checkpoint.set_stage("lookup")
        self.lookup_started_at = time.time()
        self.logging_manager.log_message(f"Looking up providers for {len(phones)} phone number(s)", "info")

        prev = svc.on_progress

        def _relay(payload: Dict[str, Any]) -> None:
            self._publish(LookupProgressEvent(**payload))
            if prev is not None:
                prev(payload)

        svc.on_progress = _relay
        try:
            providers = await svc.lookup_providers(phones, stop_event=self._stop)
        finally:
            svc.on_progress = prev

        updated = self._attach_providers(providers, start_index)
        if self._stop.is_set():
            self.logging_manager.log_message(
                f"Provider lookup stopped: {len(providers)} number(s) resolved, {updated} business(es) updated",
                "warning",
            )
            return
        self.logging_manager.log_message(
            f"Provider lookup complete: {len(providers)} number(s), {updated} business(es) updated",
            "success",
        )
        self._publish(LookupCompleteEvent(providers=dict(providers), updated_businesses=updated))

    def _attach_providers(self, providers: Dict[str, str], start_index: int = 0) -> int:
        updated = 0
        out = list(self._results[:start_index])
        for b in self._results[start_index:]:
            prov = providers.get(clean_phone_number(b.phone)) if b.phone else None
            if prov:
                out.append(replace(b, provider=prov))
                updated += 1
            else:
                out.append(b)
        self._results = out
        return updated

    # ---------------- Event channel ----------------

    def _open_channel(self) -> None:
        # the same queue is reused so a reader attached between runs keeps working
        self._channel_closed = False

    def _close_channel(self) -> None:
        if not self._channel_closed:
            self.events.put_nowait(None)
            self._channel_closed = True

    def _publish(self, event: Any) -> None:
        if self._channel_closed:
            return
        self.events.put_nowait(event)

    def _relay_log(self, entry: LogEntry) -> None:
        self._publish(LogEvent(timestamp=entry.timestamp, level=entry.level, message=entry.message))

    def _log_run_summary(self) -> None:
        self.logging_manager.log_message(
            f"Scraping finished: {len(self._results)} business(es) from "
            f"{len(self._successful)} town(s)",
            "success",
        )
        if self._failed:
            self.logging_manager.log_message(f"Failed towns: {', '.join(self._failed)}", "warning")
