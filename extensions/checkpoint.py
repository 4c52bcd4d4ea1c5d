from __future__ import annotations
import asyncio
import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from extensions.output_paths import ensure_session_dirs

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

# ---------------------------------------------------------------------------
#  Checkpoint schema and helpers
# ---------------------------------------------------------------------------

class SessionCheckpoint:
    """
    Per-session progress over towns.
    Stored at outputs/{session_id}/checkpoints/progress.json
    """

    def __init__(self, session_id: str, *, root: Optional[Path] = None):
        self.session_id = str(session_id)
        dirs = ensure_session_dirs(self.session_id, root)
        self.path = dirs["checkpoints"] / "progress.json"
        self.data: Dict[str, Any] = {
            "session_id": self.session_id,
            "started_at": None,
            "finished_at": None,
            "stage": None,  # scrape | lookup | done
            "towns_total": 0,
            "towns_done": [],
            "towns_failed": [],
            "last_town": None,
            "businesses": 0,
            "errors": [],
        }
        self._lock = asyncio.Lock()

    # ---------------------- Core methods ----------------------

    async def save(self) -> None:
        async with self._lock:
            try:
                self.path.write_text(json.dumps(self.data, indent=2, ensure_ascii=False), encoding="utf-8")
            except OSError as e:
                logger.error("[checkpoint] Save failed for %s: %s", self.session_id, e)

    async def mark_start(self, towns: Iterable[str]) -> None:
        self.data.update({
            "started_at": _now(),
            "finished_at": None,
            "stage": "scrape",
            "towns_total": len(list(towns)),
            "towns_done": [],
            "towns_failed": [],
            "businesses": 0,
            "errors": [],
        })
        await self.save()

    async def mark_town_done(self, town: str, businesses: int) -> None:
        if town in self.data["towns_failed"]:
            self.data["towns_failed"].remove(town)
        if town not in self.data["towns_done"]:
            self.data["towns_done"].append(town)
        self.data["last_town"] = town
        self.data["businesses"] += int(businesses)
        await self.save()

    async def mark_town_failed(self, town: str, reason: str) -> None:
        if town not in self.data["towns_failed"]:
            self.data["towns_failed"].append(town)
        self.data["last_town"] = town
        self.data.setdefault("errors", []).append({"town": town, "reason": reason, "time": _now()})
        await self.save()

    async def set_stage(self, stage: str) -> None:
        self.data["stage"] = stage
        await self.save()

    async def mark_finished(self) -> None:
        self.data["stage"] = "done"
        self.data["finished_at"] = _now()
        await self.save()
