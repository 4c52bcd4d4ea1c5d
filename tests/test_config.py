import os

import pytest

from scraper.config import NavigationOptions, ScrapeConfig, load_config


def _clear_env(keys):
    for k in keys:
        os.environ.pop(k, None)


def test_load_config_defaults(monkeypatch):
    # clear potentially noisy env vars
    _clear_env([
        "SIMULTANEOUS_TOWNS",
        "SIMULTANEOUS_INDUSTRIES",
        "SIMULTANEOUS_LOOKUPS",
        "NAV_MAX_RETRIES",
        "NAV_BASE_DELAY_MS",
        "NAV_MIN_TIMEOUT_MS",
        "NAV_MAX_TIMEOUT_MS",
        "NAV_INITIAL_TIMEOUT_MS",
        "MAX_DISPLAY_LOGS",
        "ERROR_LOG_CAPACITY",
        "PROVIDER_BACKEND",
        "PROVIDER_CACHE_TTL_DAYS",
        "PAGE_CLOSE_TIMEOUT_MS",
        "QUEUE_DEFAULT_TOWN_MINUTES",
        "SEARCH_COUNTRY_SUFFIX",
        "SEARCH_LOCATION_HINTS",
    ])

    cfg = load_config()

    assert cfg.simultaneous_towns == 2
    assert cfg.simultaneous_industries == 1
    assert cfg.simultaneous_lookups == 2

    nav = cfg.navigation
    assert (nav.max_retries, nav.base_delay_ms) == (5, 3000)
    assert (nav.min_timeout_ms, nav.initial_timeout_ms, nav.max_timeout_ms) == (15000, 60000, 120000)

    assert cfg.max_display_logs == 300
    assert cfg.error_log_capacity == 1000
    assert cfg.provider_backend == "http"
    assert cfg.provider_cache_ttl_days == 30
    assert cfg.queue_default_town_minutes == 1.5
    assert 100 <= cfg.page_close_timeout_ms <= 10_000
    assert cfg.country_suffix == "South Africa"
    assert "western cape" in cfg.location_hints


def test_load_config_env_overrides_and_bounds(monkeypatch):
    # push extremes to test clamping
    monkeypatch.setenv("SIMULTANEOUS_TOWNS", "999")
    monkeypatch.setenv("SIMULTANEOUS_LOOKUPS", "0")
    monkeypatch.setenv("NAV_MAX_RETRIES", "3")
    monkeypatch.setenv("NAV_BASE_DELAY_MS", "-10")
    monkeypatch.setenv("BLOCK_HEAVY_RESOURCES", "false")
    monkeypatch.setenv("PROVIDER_BACKEND", "browser")
    monkeypatch.setenv("MAX_DISPLAY_LOGS", "50")

    cfg = load_config()

    assert cfg.simultaneous_towns == 16
    assert cfg.simultaneous_lookups == 1
    assert cfg.navigation.max_retries == 3
    assert cfg.navigation.base_delay_ms == 0
    assert cfg.block_heavy_resources is False
    assert cfg.provider_backend == "browser"
    assert cfg.max_display_logs == 50


def test_scrape_config_normalises_towns_and_rejects_bad_values():
    sc = ScrapeConfig(towns=(" Paarl ", "", "Ceres", "Paarl"), industries=(" Plumbers ",))
    assert sc.towns == ("Paarl", "Ceres")
    assert sc.industries == ("Plumbers",)

    with pytest.raises(ValueError):
        ScrapeConfig(towns=())
    with pytest.raises(ValueError):
        ScrapeConfig(towns=("  ",))
    with pytest.raises(ValueError):
        ScrapeConfig(towns=("Paarl",), simultaneous_towns=0)
    with pytest.raises(ValueError):
        ScrapeConfig(towns=("Paarl",), simultaneous_lookups=-2)


def test_scrape_config_build_takes_defaults_from_process_config(monkeypatch):
    monkeypatch.setenv("SIMULTANEOUS_TOWNS", "4")
    monkeypatch.setenv("SIMULTANEOUS_INDUSTRIES", "3")
    cfg = load_config()

    sc = ScrapeConfig.build(["Paarl"], ["Plumbers"], cfg=cfg, simultaneous_industries=None)
    assert sc.simultaneous_towns == 4
    assert sc.simultaneous_industries == 3

    sc = ScrapeConfig.build(["Paarl"], cfg=cfg, simultaneous_towns=1, skip_provider_lookup=True)
    assert sc.simultaneous_towns == 1
    assert sc.industries == ()
    assert sc.skip_provider_lookup is True


def test_navigation_options_defaults_are_valid():
    opts = NavigationOptions()
    assert opts.min_timeout_ms <= opts.initial_timeout_ms <= opts.max_timeout_ms
