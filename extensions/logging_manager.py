from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "success", "warning", "error"]
TownStatus = Literal["in_progress", "completed", "error"]

DEFAULT_MAX_DISPLAY_LOGS = 300

_LEVEL_TO_LOGGING = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: str
    message: str


@dataclass
class TownLog:
    town_name: str
    status: str = "in_progress"
    lead_count: int = 0
    errors: List[str] = field(default_factory=list)
    industry_progress: Dict[str, str] = field(default_factory=dict)
    start_time: float = 0.0
    end_time: Optional[float] = None

    @property
    def duration_ms(self) -> float:
        if self.end_time is None:
            return 0.0
        return max(0.0, (self.end_time - self.start_time) * 1000.0)


class LoggingManager:
    """
    Per-run log and progress sink.

    Keeps one TownLog per town, a bounded display buffer for live views and an
    unbounded full log for the lifetime of the run.
    """

    def __init__(
        self,
        max_display_logs: int = DEFAULT_MAX_DISPLAY_LOGS,
        *,
        on_log: Optional[Callable[[LogEntry], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_display_logs < 1:
            raise ValueError("max_display_logs must be >= 1")
        self._clock = clock
        self.on_log = on_log
        self._max_display = max_display_logs
        self._display: Deque[LogEntry] = deque(maxlen=max_display_logs)
        self._all: List[LogEntry] = []
        self._towns: Dict[str, TownLog] = {}
        self._session_start = self._clock()

    # ---------------- Town lifecycle ----------------

    def _town(self, town: str) -> TownLog:
        tl = self._towns.get(town)
        if tl is None:
            tl = TownLog(town_name=town, start_time=self._clock())
            self._towns[town] = tl
        return tl

    def log_town_start(self, town: str) -> None:
        tl = self._town(town)
        tl.status = "in_progress"
        tl.start_time = self._clock()
        tl.end_time = None
        self.log_message(f"Started scraping {town}", "info")

    def log_town_complete(self, town: str, lead_count: int) -> None:
        tl = self._town(town)
        tl.status = "completed"
        tl.lead_count = lead_count
        tl.end_time = self._clock()
        self.log_message(f"Completed {town}: {lead_count} businesses", "success")

    def log_industry_progress(self, town: str, industry: str, status: str) -> None:
        tl = self._town(town)
        tl.industry_progress[industry] = status
        self.log_message(f"{town} / {industry or 'business search'}: {status}", "info")

    def log_error(self, town: str, industry: str, message: str) -> None:
        tl = self._town(town)
        tl.errors.append(f"{industry}: {message}")
        if tl.status != "completed":
            tl.status = "error"
            tl.end_time = self._clock()
        self.log_message(f"Error in {town} ({industry or 'business search'}): {message}", "error")

    # ---------------- Raw messages ----------------

    def log_message(self, message: str, level: str = "info") -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            message=message,
        )
        self._display.append(entry)
        self._all.append(entry)
        logger.log(_LEVEL_TO_LOGGING.get(level, logging.INFO), "%s", message)
        if self.on_log is not None:
            try:
                self.on_log(entry)
            except Exception as e:
                logger.debug("on_log callback failed: %s", e)
        return entry

    def set_max_display_logs(self, n: int) -> None:
        if n < 1:
            raise ValueError("max display logs must be >= 1")
        self._max_display = n
        self._display = deque(self._display, maxlen=n)

    # ---------------- Queries ----------------

    @property
    def max_display_logs(self) -> int:
        return self._max_display

    def get_display_logs(self) -> List[LogEntry]:
        return list(self._display)

    def get_all_logs(self) -> List[LogEntry]:
        return list(self._all)

    def get_town_logs(self) -> Dict[str, TownLog]:
        return dict(self._towns)

    def get_town_log(self, town: str) -> Optional[TownLog]:
        return self._towns.get(town)

    def get_summary(self) -> Dict[str, float]:
        towns = list(self._towns.values())
        completed = [t for t in towns if t.status == "completed"]
        avg = (sum(t.duration_ms for t in completed) / len(completed)) if completed else 0.0
        return {
            "total_towns": len(towns),
            "completed_towns": len(completed),
            "total_leads": sum(t.lead_count for t in towns),
            "total_errors": sum(len(t.errors) for t in towns),
            "total_duration_ms": max(0.0, (self._clock() - self._session_start) * 1000.0),
            "average_duration_ms": avg,
        }

    def get_summary_table(self) -> List[str]:
        labels = {"completed": "Completed", "error": "Error", "in_progress": "In Progress"}
        width = max([len("Town")] + [len(t) for t in self._towns])
        lines = [
            "=== SCRAPING SUMMARY ===",
            "",
            f"{'Town'.ljust(width)} | Businesses | Status",
            "-" * (width + 25),
        ]
        for name, tl in self._towns.items():
            lines.append(f"{name.ljust(width)} | {str(tl.lead_count).rjust(10)} | {labels.get(tl.status, tl.status)}")
        s = self.get_summary()
        lines += [
            "",
            f"Total Towns: {s['total_towns']}",
            f"Completed Towns: {s['completed_towns']}",
            f"Total Businesses: {s['total_leads']}",
            f"Total Errors: {s['total_errors']}",
            f"Total Duration: {s['total_duration_ms'] / 1000:.2f}s",
            f"Average Duration per Town: {s['average_duration_ms'] / 1000:.2f}s",
        ]
        return lines

    # ---------------- Lifecycle ----------------

    def clear(self) -> None:
        self._display = deque(maxlen=self._max_display)
        self._all = []
        self._towns = {}
        self._session_start = self._clock()
