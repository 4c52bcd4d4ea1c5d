from __future__ import annotations

from dataclasses import dataclass, asdict, field
from typing import Any, Dict


@dataclass(frozen=True)
class ScrapedBusiness:
    name: str
    phone: str = ""
    provider: str = ""
    address: str = ""
    maps_address: str = ""
    type_of_business: str = ""
    town: str = ""

    def __post_init__(self) -> None:
        # normalise None -> "" so downstream never sees a missing field
        for f in ("phone", "provider", "address", "maps_address", "type_of_business", "town"):
            val = getattr(self, f)
            object.__setattr__(self, f, "" if val is None else str(val).strip())
        name = (self.name or "").strip()
        if not name:
            raise ValueError("business name must be non-empty")
        object.__setattr__(self, "name", name)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProgressState:
    total_towns: int = 0
    completed_towns: int = 0
    total_industries: int = 0
    completed_industries: int = 0
    percentage: float = 0.0
    towns_remaining: int = 0
    businesses_scraped: int = 0
    current_town: str = ""
    estimated_time_remaining_s: float = 0.0
    extras: Dict[str, Any] = field(default_factory=dict)

    def recompute(self) -> None:
        self.completed_towns = min(self.completed_towns, self.total_towns)
        self.towns_remaining = self.total_towns - self.completed_towns
        if self.total_towns <= 0:
            self.percentage = 0.0
        elif self.completed_towns == self.total_towns:
            self.percentage = 100.0
        else:
            self.percentage = round(self.completed_towns / self.total_towns * 100.0, 2)

    def snapshot(self) -> "ProgressState":
        return ProgressState(**{**asdict(self), "extras": dict(self.extras)})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
