from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple
from contextvars import ContextVar

from .output_paths import ensure_session_dirs, town_filename

# Per-task context: which (session_id, town) is this task scraping right now?
_CURRENT_TOWN: ContextVar[Optional[Tuple[str, str]]] = ContextVar("_CURRENT_TOWN", default=None)


class _TownFilter(logging.Filter):
    """
    Allow records if they belong to the current session/town context OR
    if their logger name starts with town.<session_id>.<town>.
    The handler sits on root and still isolates output per town.
    """
    def __init__(self, session_id: str, town: str) -> None:
        super().__init__()
        self.key = (str(session_id), str(town))
        self.prefix = f"town.{session_id}.{town}"

    def filter(self, record: logging.LogRecord) -> bool:
        if _CURRENT_TOWN.get() == self.key:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(self.prefix)


def current_town() -> Optional[Tuple[str, str]]:
    return _CURRENT_TOWN.get()


class LoggingExtension:
    def __init__(
        self,
        session_id: str,
        *,
        output_root: Optional[Path] = None,
        level: int = logging.INFO,
    ) -> None:
        self.session_id = str(session_id)
        self.output_root = output_root
        self.level = level
        self._town_handlers: Dict[str, logging.Handler] = {}

    # ---------------- Town logger ----------------

    def get_town_logger(self, town: str) -> logging.Logger:
        """
        Return a town-scoped logger, attaching a per-town file handler at root
        that only lets through records emitted under this town's context.
        """
        if town not in self._town_handlers:
            dirs = ensure_session_dirs(self.session_id, self.output_root)
            path = dirs["logs"] / town_filename(town, ".log")
            fh = logging.FileHandler(path, mode="a", encoding="utf-8")
            fh.setLevel(self.level)
            fh.addFilter(_TownFilter(self.session_id, town))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._town_handlers[town] = fh

        logger = logging.getLogger(f"town.{self.session_id}.{town}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    def log_path(self, town: str) -> Optional[Path]:
        fh = self._town_handlers.get(town)
        return Path(fh.baseFilename) if isinstance(fh, logging.FileHandler) else None

    # ---------------- Context helpers ----------------

    def set_town_context(self, town: str):
        """
        Route every module logger in the current task into this town's file.
        Returns a token to pass to reset_town_context.
        """
        self.get_town_logger(town)
        return _CURRENT_TOWN.set((self.session_id, str(town)))

    def reset_town_context(self, token) -> None:
        try:
            _CURRENT_TOWN.reset(token)
        except ValueError:
            # token was created in another context
            _CURRENT_TOWN.set(None)

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        for fh in self._town_handlers.values():
            root.removeHandler(fh)
            try:
                fh.flush()
                fh.close()
            except OSError:
                pass
        self._town_handlers.clear()
