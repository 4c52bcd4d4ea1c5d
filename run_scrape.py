from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from extensions.error_logger import ErrorLogger
from extensions.run_report import write_run_report
from scraper.browser import init_browser, new_page, shutdown_browser
from scraper.config import ScrapeConfig, load_config
from scraper.events import (
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
from scraper.orchestrator import ScrapingOrchestrator
from scraper.provider_lookup import ProviderCache, ProviderLookupService, build_backend
from scraper.session_queue import ScrapeService
from scraper.utils import dedupe_keep_order, init_logging, parse_csv_list


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Scrape Google Maps businesses for towns x industries, then look up phone providers"
    )

    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--towns", type=str, help="Comma-separated towns, e.g. 'Stellenbosch,Paarl'")
    src.add_argument("--towns-file", type=Path, help="Text file with one town per line")

    p.add_argument(
        "--industries",
        type=str,
        default="",
        help="Comma-separated industries. Empty means a plain business search per town.",
    )
    p.add_argument("--simultaneous-towns", type=int, default=None, help="Towns scraped in parallel (default from env)")
    p.add_argument("--simultaneous-industries", type=int, default=None, help="Industries in flight per town")
    p.add_argument("--simultaneous-lookups", type=int, default=None, help="Provider lookup batches in flight")
    p.add_argument("--skip-lookup", action="store_true", help="Skip the phone provider lookup phase")
    p.add_argument("--retry-failed", action="store_true", help="Re-run failed towns once after the main run")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    return p.parse_args(argv)


def _load_towns(args: argparse.Namespace) -> List[str]:
    if args.towns_file is not None:
        lines = args.towns_file.read_text(encoding="utf-8").splitlines()
        towns = [ln.strip() for ln in lines if ln.strip() and not ln.lstrip().startswith("#")]
    else:
        towns = parse_csv_list(args.towns)
    return dedupe_keep_order(towns)


# ----------------------------
# Event stream
# ----------------------------

async def _stream_events(orch: ScrapingOrchestrator, log: logging.Logger) -> None:
    async for ev in orch.iter_events():
        if isinstance(ev, ProgressEvent):
            p = ev.progress
            log.info(
                "Progress %d/%d towns (%.2f%%) businesses=%d eta=%.0fs",
                p.completed_towns, p.total_towns, p.percentage,
                p.businesses_scraped, p.estimated_time_remaining_s,
            )
        elif isinstance(ev, TownCompleteEvent):
            if ev.success:
                log.info("Town %s done: %d business(es) in %.1fs", ev.town, ev.lead_count, ev.duration_s)
            else:
                log.warning("Town %s failed after %.1fs: %s", ev.town, ev.duration_s, ev.error)
        elif isinstance(ev, LookupProgressEvent):
            log.info(
                "Provider lookup %d/%d (%d%%) batch %d/%d",
                ev.completed, ev.total, ev.percentage, ev.current_batch, ev.total_batches,
            )
        elif isinstance(ev, LookupCompleteEvent):
            log.info("Provider lookup complete: %d business(es) updated", ev.updated_businesses)
        elif isinstance(ev, CompleteEvent):
            log.info("Scraping complete: %d business(es), %d failed town(s)",
                     ev.total_businesses, len(ev.failed_towns))
        elif isinstance(ev, ErrorEvent):
            log.warning("Error%s: %s", f" in {ev.town}" if ev.town else "", ev.message)
        elif isinstance(ev, StoppedEvent):
            log.warning("Run %s (%d/%d towns)", ev.reason, ev.completed_towns, ev.total_towns)
        elif isinstance(ev, (LogEvent, BusinessEvent)):
            log.debug("%s", ev)


# ----------------------------
# Main async
# ----------------------------

async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    cfg = load_config()

    level = getattr(logging, args.log_level)
    init_logging(cfg.log_file, level)
    root_logger = logging.getLogger("run_scrape")

    towns = _load_towns(args)
    if not towns:
        root_logger.error("No towns given. Exiting.")
        return 2
    industries = parse_csv_list(args.industries)

    try:
        run_cfg = ScrapeConfig.build(
            towns,
            industries,
            cfg=cfg,
            simultaneous_towns=args.simultaneous_towns,
            simultaneous_industries=args.simultaneous_industries,
            simultaneous_lookups=args.simultaneous_lookups,
            skip_provider_lookup=args.skip_lookup,
        )
    except ValueError as e:
        root_logger.error("Invalid run configuration: %s", e)
        return 2

    root_logger.info(
        "Towns=%d industries=%d towns||=%d industries||=%d lookups||=%d skip_lookup=%s",
        len(run_cfg.towns), len(run_cfg.industries), run_cfg.simultaneous_towns,
        run_cfg.simultaneous_industries, run_cfg.simultaneous_lookups, run_cfg.skip_provider_lookup,
    )

    error_logger = ErrorLogger(cfg.error_log_capacity)
    pw, browser, context = await init_browser(cfg)
    backend = None
    try:
        cache = ProviderCache(cfg.provider_cache_file, cfg.provider_cache_ttl_days)
        await cache.load()
        if not run_cfg.skip_provider_lookup:
            backend = build_backend(cfg, browser=browser)

        def _lookup_factory(sc: ScrapeConfig) -> Optional[ProviderLookupService]:
            if backend is None or sc.skip_provider_lookup:
                return None
            return ProviderLookupService(
                backend,
                max_concurrent_batches=sc.simultaneous_lookups,
                error_logger=error_logger,
                cache=cache,
            )

        service = ScrapeService(
            page_factory=lambda: new_page(context),
            error_logger=error_logger,
            cfg=cfg,
            lookup_factory=_lookup_factory,
        )

        session_id = await service.start(run_cfg)
        orch = service.get_orchestrator(session_id)
        root_logger.info("Session %s queue status: %s", session_id, await service.queue_status(session_id))

        streamer = asyncio.create_task(_stream_events(orch, root_logger))
        await service.wait(session_id)
        await streamer

        if args.retry_failed and orch.get_failed_towns():
            root_logger.info("Retrying failed towns: %s", ", ".join(orch.get_failed_towns()))
            streamer = asyncio.create_task(_stream_events(orch, root_logger))
            found = await service.retry_failed(session_id)
            await streamer
            root_logger.info("Retry recovered %d business(es)", len(found))

        status = service.status(session_id)
        report = write_run_report(
            session_id,
            orch.get_results(),
            logging_manager=service.get_logging_manager(session_id),
            error_logger=error_logger,
            towns=run_cfg.towns,
            failed_towns=orch.get_failed_towns(),
            root=cfg.output_root,
        )
        removed = await cache.cleanup()
        if removed:
            root_logger.info("Provider cache: dropped %d expired entr(y/ies)", removed)

        for line in service.get_logging_manager(session_id).get_summary_table():
            print(line)
        failed = orch.get_failed_towns()
        if failed:
            print(f"\nFailed towns ({len(failed)}): {', '.join(failed)}")
        root_logger.info("Status=%s report=%s", status["status"], report["paths"].get("businesses"))
        return 0 if status["status"] == "completed" else 1
    finally:
        if backend is not None and hasattr(backend, "aclose"):
            await backend.aclose()
        await shutdown_browser(pw, browser, context)


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    raise SystemExit(asyncio.run(main_async()))

if __name__ == "__main__":
    main()
