from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal

from .utils import getenv_bool, getenv_int, getenv_str, getenv_float, getenv_csv, dedupe_keep_order

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

# Subfolders & files (paths only; no logging init here)
OUTPUT_ROOT: Path = PROJECT_ROOT / "outputs"
LOG_FILE: Path = LOG_DIR / "scraper.log"
PROVIDER_CACHE_FILE: Path = DATA_DIR / "provider_cache.json"

# Ensure directories exist at import time (but do NOT create/log to files here)
for p in (DATA_DIR, LOG_DIR, OUTPUT_ROOT):
    p.mkdir(parents=True, exist_ok=True)


# ---------- Per-run configs ----------
@dataclass(frozen=True)
class NavigationOptions:
    max_retries: int = 5
    base_delay_ms: int = 3000
    min_timeout_ms: int = 15000
    max_timeout_ms: int = 120000
    initial_timeout_ms: int = 60000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1 (got {self.max_retries})")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0 (got {self.base_delay_ms})")
        if not (self.min_timeout_ms <= self.initial_timeout_ms <= self.max_timeout_ms):
            raise ValueError(
                "timeouts must satisfy min <= initial <= max "
                f"(got {self.min_timeout_ms} / {self.initial_timeout_ms} / {self.max_timeout_ms})"
            )


@dataclass(frozen=True)
class ScrapeConfig:
    towns: tuple[str, ...]
    industries: tuple[str, ...] = ()
    simultaneous_towns: int = 2
    simultaneous_industries: int = 1
    simultaneous_lookups: int = 2
    skip_provider_lookup: bool = False

    def __post_init__(self) -> None:
        towns = tuple(dedupe_keep_order(t.strip() for t in self.towns if t and t.strip()))
        industries = tuple(i.strip() for i in self.industries if i is not None)
        object.__setattr__(self, "towns", towns)
        object.__setattr__(self, "industries", industries)
        if not towns:
            raise ValueError("at least one town is required")
        for name in ("simultaneous_towns", "simultaneous_industries", "simultaneous_lookups"):
            val = getattr(self, name)
            if not isinstance(val, int) or val < 1:
                raise ValueError(f"{name} must be a positive integer (got {val!r})")

    @classmethod
    def build(
        cls,
        towns: Iterable[str],
        industries: Iterable[str] = (),
        *,
        cfg: "Config | None" = None,
        **overrides,
    ) -> "ScrapeConfig":
        """Build a run config, taking parallelism defaults from the process Config."""
        base = {}
        if cfg is not None:
            base = {
                "simultaneous_towns": cfg.simultaneous_towns,
                "simultaneous_industries": cfg.simultaneous_industries,
                "simultaneous_lookups": cfg.simultaneous_lookups,
            }
        base.update({k: v for k, v in overrides.items() if v is not None})
        return cls(towns=tuple(towns), industries=tuple(industries), **base)


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Runtime
    env: Literal["dev", "staging", "prod"]

    # Run parallelism defaults
    simultaneous_towns: int
    simultaneous_industries: int
    simultaneous_lookups: int

    # Navigation / backoff
    navigation: NavigationOptions

    # Browser
    user_agent: str
    headless: bool
    block_heavy_resources: bool
    proxy_server: str | None
    browser_slow_mo_ms: int
    browser_args_extra: tuple[str, ...]
    page_close_timeout_ms: int
    settle_after_nav_ms: int

    # Logging buffers
    max_display_logs: int
    error_log_capacity: int

    # Provider lookup
    provider_backend: Literal["http", "browser"]
    provider_lookup_url: str
    provider_cache_ttl_days: int
    provider_lookup_delay_ms: int
    provider_request_timeout_ms: int
    provider_max_attempts: int

    # Queue heuristics
    queue_default_town_minutes: float

    # Paths
    project_root: Path
    data_dir: Path
    output_root: Path
    log_file: Path
    provider_cache_file: Path

    # Search
    country_suffix: str = "South Africa"
    location_hints: tuple[str, ...] = field(default_factory=tuple)


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),

        # A handful of browser pages is plenty for one Maps session.
        simultaneous_towns=getenv_int("SIMULTANEOUS_TOWNS", 2, 1, 16),
        simultaneous_industries=getenv_int("SIMULTANEOUS_INDUSTRIES", 1, 1, 8),
        simultaneous_lookups=getenv_int("SIMULTANEOUS_LOOKUPS", 2, 1, 10),

        navigation=NavigationOptions(
            max_retries=getenv_int("NAV_MAX_RETRIES", 5, 1, 10),
            base_delay_ms=getenv_int("NAV_BASE_DELAY_MS", 3000, 0, 60000),
            min_timeout_ms=getenv_int("NAV_MIN_TIMEOUT_MS", 15000, 1000, 60000),
            max_timeout_ms=getenv_int("NAV_MAX_TIMEOUT_MS", 120000, 60000, 600000),
            initial_timeout_ms=getenv_int("NAV_INITIAL_TIMEOUT_MS", 60000, 15000, 120000),
        ),

        user_agent=getenv_str(
            "SCRAPER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        headless=getenv_bool("BROWSER_HEADLESS", True),
        block_heavy_resources=getenv_bool("BLOCK_HEAVY_RESOURCES", True),
        proxy_server=getenv_str("PROXY_SERVER", "") or None,
        browser_slow_mo_ms=getenv_int("BROWSER_SLOW_MO_MS", 0, 0, 5000),
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),
        page_close_timeout_ms=getenv_int("PAGE_CLOSE_TIMEOUT_MS", 1500, 100, 10000),
        # Maps keeps rendering the feed after domcontentloaded.
        settle_after_nav_ms=getenv_int("SETTLE_AFTER_NAV_MS", 2000, 0, 10000),

        max_display_logs=getenv_int("MAX_DISPLAY_LOGS", 300, 10, 10_000),
        error_log_capacity=getenv_int("ERROR_LOG_CAPACITY", 1000, 10, 100_000),

        provider_backend=getenv_str("PROVIDER_BACKEND", "http"),
        provider_lookup_url=getenv_str(
            "PROVIDER_LOOKUP_URL", "https://www.porting.co.za/PublicWebsite/crdb"
        ),
        provider_cache_ttl_days=getenv_int("PROVIDER_CACHE_TTL_DAYS", 30, 0, 365),
        provider_lookup_delay_ms=getenv_int("PROVIDER_LOOKUP_DELAY_MS", 500, 0, 10000),
        provider_request_timeout_ms=getenv_int("PROVIDER_REQUEST_TIMEOUT_MS", 15000, 1000, 60000),
        provider_max_attempts=getenv_int("PROVIDER_MAX_ATTEMPTS", 3, 1, 10),

        queue_default_town_minutes=getenv_float("QUEUE_DEFAULT_TOWN_MINUTES", 1.5, 0.1, 120.0),

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        output_root=OUTPUT_ROOT,
        log_file=LOG_FILE,
        provider_cache_file=PROVIDER_CACHE_FILE,

        country_suffix=getenv_str("SEARCH_COUNTRY_SUFFIX", "South Africa"),
        location_hints=getenv_csv(
            "SEARCH_LOCATION_HINTS",
            "south africa,gauteng,western cape,eastern cape,northern cape,free state,"
            "kwazulu-natal,limpopo,mpumalanga,north west,northwest",
        ),
    )
    return cfg
