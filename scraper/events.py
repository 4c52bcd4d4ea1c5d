"""
Typed events published by a scraping run.

A run owns one ``asyncio.Queue`` of these; the queue is closed with a ``None``
sentinel after the final event.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .models import ProgressState, ScrapedBusiness


@dataclass(frozen=True)
class ProgressEvent:
    progress: ProgressState
    town: str = ""


@dataclass(frozen=True)
class LogEvent:
    timestamp: str
    level: str
    message: str


@dataclass(frozen=True)
class BusinessEvent:
    business: ScrapedBusiness


@dataclass(frozen=True)
class TownCompleteEvent:
    town: str
    lead_count: int
    success: bool = True
    duration_s: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class CompleteEvent:
    total_businesses: int
    successful_towns: Tuple[str, ...] = ()
    failed_towns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LookupProgressEvent:
    completed: int
    total: int
    percentage: int = 0
    current_batch: int = 0
    total_batches: int = 0
    from_cache: int = 0


@dataclass(frozen=True)
class LookupCompleteEvent:
    providers: Dict[str, str] = field(default_factory=dict)
    updated_businesses: int = 0


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    town: str = ""
    fatal: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoppedEvent:
    reason: str = "stopped"
    completed_towns: int = 0
    total_towns: int = 0
