from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from extensions.checkpoint import SessionCheckpoint
from extensions.error_logger import ErrorLogger
from extensions.logging import LoggingExtension
from extensions.logging_manager import LoggingManager

from .config import Config, ScrapeConfig, load_config
from .extraction import Extractor
from .models import ScrapedBusiness
from .orchestrator import ScrapingOrchestrator, PageFactory
from .provider_lookup import ProviderLookupService
from .utils import QueueCancelled

logger = logging.getLogger(__name__)

SessionRunner = Callable[[str], Awaitable[Any]]

DEFAULT_TOWN_MINUTES = 1.5
RECENT_LOGS = 50


@dataclass
class QueueEntry:
    session_id: str
    enqueued_at: float
    position: int = 0
    estimated_wait_minutes: float = 0.0
    town_count: int = 1


class SessionQueue:
    """
    Admission control for scraping sessions: one active session at a time,
    the rest wait in FIFO order.

    When a `runner` is given, promotion starts it in a task and the next
    session is promoted when that task ends. Without a runner the caller
    reports completion through `release()`.
    """

    def __init__(
        self,
        runner: Optional[SessionRunner] = None,
        *,
        default_town_minutes: float = DEFAULT_TOWN_MINUTES,
        history_size: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.runner = runner
        self.default_town_minutes = default_town_minutes
        self._clock = clock
        self._entries: "OrderedDict[str, QueueEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._durations: Deque[float] = deque(maxlen=history_size)
        self._active: Optional[str] = None
        self._active_started_at: float = 0.0
        self._active_town_count: int = 0
        self._active_task: Optional[asyncio.Task] = None

    # ---------------- Mutations ----------------

    async def enqueue(self, session_id: str, town_count: int = 1) -> int:
        """Add a session to the back of the queue and return its 1-based position."""
        async with self._lock:
            if session_id in self._entries or session_id == self._active:
                raise ValueError(f"session {session_id} is already queued or active")
            self._entries[session_id] = QueueEntry(
                session_id=session_id,
                enqueued_at=self._clock(),
                town_count=max(1, int(town_count)),
            )
            self._renumber()
            position = self._entries[session_id].position
        logger.info("[queue] %s enqueued at position %d", session_id, position)
        await self.promote_next()
        return position

    async def cancel(self, session_id: str) -> bool:
        async with self._lock:
            entry = self._entries.pop(session_id, None)
            if entry is not None:
                self._renumber()
        if entry is not None:
            logger.info("[queue] %s cancelled from position %d", session_id, entry.position)
        return entry is not None

    async def promote_next(self) -> Optional[str]:
        """Move the head into the free active slot. Returns the promoted id, if any."""
        async with self._lock:
            if self._active is not None or not self._entries:
                return None
            session_id, entry = self._entries.popitem(last=False)
            self._active = session_id
            self._active_started_at = self._clock()
            self._active_town_count = entry.town_count
            self._renumber()
            if self.runner is not None:
                self._active_task = asyncio.create_task(
                    self._run_active(session_id), name=f"session-{session_id}"
                )
        logger.info("[queue] %s is now processing", session_id)
        return session_id

    async def release(self, session_id: str) -> None:
        """Free the active slot held by `session_id` and promote the next session."""
        async with self._lock:
            if self._active != session_id:
                return
            self._active = None
            self._active_task = None
            self._active_town_count = 0
        await self.promote_next()

    async def _run_active(self, session_id: str) -> None:
        try:
            await self.runner(session_id)
        except asyncio.CancelledError:
            logger.warning("[queue] runner for %s was cancelled", session_id)
            raise
        except Exception:
            logger.exception("[queue] runner for %s failed", session_id)
        finally:
            await self.release(session_id)

    def record_town_duration(self, seconds: float) -> None:
        if seconds >= 0:
            self._durations.append(seconds / 60.0)

    # ---------------- Queries ----------------

    @property
    def avg_town_minutes(self) -> float:
        if not self._durations:
            return self.default_town_minutes
        return sum(self._durations) / len(self._durations)

    @property
    def active_session(self) -> Optional[str]:
        return self._active

    @property
    def active_task(self) -> Optional[asyncio.Task]:
        return self._active_task

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    async def queue_status(self, session_id: str) -> Dict[str, Any]:
        async with self._lock:
            self._renumber()
            if session_id == self._active:
                position: Optional[int] = 0
                eta: Optional[float] = 0.0
            elif session_id in self._entries:
                entry = self._entries[session_id]
                position = entry.position
                eta = entry.estimated_wait_minutes
            else:
                position = None
                eta = None
            return {
                "position": position,
                "eta_minutes": eta,
                "currently_processing": self._active,
            }

    async def entries(self) -> List[QueueEntry]:
        async with self._lock:
            self._renumber()
            return [QueueEntry(**asdict(e)) for e in self._entries.values()]

    # ---------------- Internals ----------------

    def _active_remaining_minutes(self) -> float:
        if self._active is None:
            return 0.0
        elapsed = (self._clock() - self._active_started_at) / 60.0
        return max(0.0, self.avg_town_minutes * self._active_town_count - elapsed)

    def _renumber(self) -> None:
        # caller holds self._lock
        avg = self.avg_town_minutes
        ahead = self._active_remaining_minutes()
        for i, entry in enumerate(self._entries.values(), start=1):
            entry.position = i
            entry.estimated_wait_minutes = round(ahead, 2)
            ahead += avg * entry.town_count


# ---------------------------
# Run-control surface
# ---------------------------

LookupFactory = Callable[[ScrapeConfig], Optional[ProviderLookupService]]


@dataclass
class _Session:
    session_id: str
    config: ScrapeConfig
    orchestrator: ScrapingOrchestrator
    logging_manager: LoggingManager
    log_ext: Optional[LoggingExtension]
    created_at: float
    done: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    retry_requested: bool = False
    retry_results: List[ScrapedBusiness] = field(default_factory=list)
    error: Optional[str] = None


class ScrapeService:
    """
    start / pause / resume / stop / status over queued scraping sessions.

    Every session gets its own orchestrator and LoggingManager; they all share
    one ErrorLogger.
    """

    def __init__(
        self,
        *,
        page_factory: PageFactory,
        error_logger: ErrorLogger,
        cfg: Optional[Config] = None,
        lookup_factory: Optional[LookupFactory] = None,
        extractor_factory: Optional[Callable[[], Extractor]] = None,
        output_root: Optional[Path] = None,
        town_log_files: bool = True,
    ) -> None:
        self.cfg = cfg or load_config()
        self.page_factory = page_factory
        self.error_logger = error_logger
        self.lookup_factory = lookup_factory
        self.extractor_factory = extractor_factory
        self.output_root = output_root or self.cfg.output_root
        self.town_log_files = town_log_files
        self.queue = SessionQueue(
            self._run_session, default_town_minutes=self.cfg.queue_default_town_minutes
        )
        self._sessions: Dict[str, _Session] = {}

    # ---------------- Control ----------------

    async def start(self, config: ScrapeConfig) -> str:
        session_id = uuid.uuid4().hex
        lm = LoggingManager(self.cfg.max_display_logs)
        log_ext = LoggingExtension(session_id, output_root=self.output_root) if self.town_log_files else None
        orch = ScrapingOrchestrator(
            config,
            session_id=session_id,
            page_factory=self.page_factory,
            lookup_service=self.lookup_factory(config) if self.lookup_factory else None,
            error_logger=self.error_logger,
            logging_manager=lm,
            navigation_options=self.cfg.navigation,
            extractor_factory=self.extractor_factory,
            log_ext=log_ext,
            checkpoint=SessionCheckpoint(session_id, root=self.output_root),
            settle_ms=self.cfg.settle_after_nav_ms,
            country_suffix=self.cfg.country_suffix,
            location_hints=self.cfg.location_hints or (),
            page_close_timeout_ms=self.cfg.page_close_timeout_ms,
            on_town_duration=self.queue.record_town_duration,
        )
        self._sessions[session_id] = _Session(
            session_id=session_id,
            config=config,
            orchestrator=orch,
            logging_manager=lm,
            log_ext=log_ext,
            created_at=time.time(),
        )
        position = await self.queue.enqueue(session_id, town_count=len(config.towns))
        logger.info("Session %s submitted (%d town(s), position %d)", session_id, len(config.towns), position)
        return session_id

    def pause(self, session_id: str) -> bool:
        return self._get(session_id).orchestrator.pause()

    def resume(self, session_id: str) -> bool:
        return self._get(session_id).orchestrator.resume()

    async def stop(self, session_id: str) -> bool:
        """Stop a running session, or cancel it if it is still waiting."""
        s = self._get(session_id)
        if await self.queue.cancel(session_id):
            s.cancelled = True
            s.orchestrator.cancel()
            s.done.set()
            return True
        # a promoted session whose run has not begun yet still takes the stop
        return s.orchestrator.stop()

    async def retry_failed(self, session_id: str) -> List[ScrapedBusiness]:
        """
        Queue a follow-up run of a finished session's failed towns and wait
        for it. Returns only the businesses found by the retry.
        """
        s = self._get(session_id)
        await s.done.wait()
        failed = s.orchestrator.get_failed_towns()
        if s.cancelled or not failed:
            return []
        # the previous run may still hold the active slot until its task unwinds
        active = self.queue.active_task
        if self.queue.active_session == session_id and active is not None:
            await asyncio.wait({active})
        s.retry_requested = True
        s.retry_results = []
        s.done.clear()
        await self.queue.enqueue(session_id, town_count=len(failed))
        await s.done.wait()
        return list(s.retry_results)

    async def wait(self, session_id: str) -> List[ScrapedBusiness]:
        s = self._get(session_id)
        await s.done.wait()
        if s.cancelled:
            raise QueueCancelled(f"session {session_id} was cancelled before it started")
        return s.orchestrator.get_results()

    # ---------------- Queries ----------------

    def status(self, session_id: str) -> Dict[str, Any]:
        s = self._get(session_id)
        if s.cancelled:
            state = "cancelled"
        elif session_id in self.queue:
            state = "queued"
        else:
            state = s.orchestrator.get_status()
            if state == "idle" and self.queue.active_session == session_id:
                state = "stopping" if s.orchestrator.stop_event.is_set() else "running"
        logs = s.logging_manager.get_display_logs()[-RECENT_LOGS:]
        return {
            "status": state,
            "progress": s.orchestrator.get_progress().to_dict(),
            "recent_logs": [asdict(e) for e in logs],
            "error": s.error,
        }

    async def queue_status(self, session_id: str) -> Dict[str, Any]:
        self._get(session_id)
        return await self.queue.queue_status(session_id)

    def get_orchestrator(self, session_id: str) -> ScrapingOrchestrator:
        return self._get(session_id).orchestrator

    def get_logging_manager(self, session_id: str) -> LoggingManager:
        return self._get(session_id).logging_manager

    def sessions(self) -> List[str]:
        return list(self._sessions)

    # ---------------- Internals ----------------

    def _get(self, session_id: str) -> _Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"unknown session: {session_id}") from None

    async def _run_session(self, session_id: str) -> None:
        s = self._sessions[session_id]
        try:
            if s.retry_requested:
                s.retry_requested = False
                s.retry_results = await s.orchestrator.retry_failed_towns()
            else:
                await s.orchestrator.start()
        except Exception as e:
            s.error = str(e) or type(e).__name__
            raise
        finally:
            if s.log_ext is not None:
                s.log_ext.close()
            s.done.set()
