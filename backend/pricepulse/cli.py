"""Command line entry point.

Usage:
    pricepulse init-db
    pricepulse search "iphone 15" [--fresh]
    pricepulse worker [--concurrency 3]
    pricepulse scheduler [--with-worker]
    pricepulse flush-metrics
    pricepulse update-tiers
    pricepulse track <product_id> [--off]
    pricepulse queue-status
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from pricepulse.config import Settings, get_settings
from pricepulse.container import Application
from pricepulse.core.logging import configure_logging

logger = structlog.get_logger(__name__)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _wait_for_shutdown() -> None:
    """Block until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def cmd_init_db(app: Application, args: argparse.Namespace) -> int:
    await app.init_db()
    print("Database tables created")
    return 0


async def cmd_search(app: Application, args: argparse.Namespace) -> int:
    response = await app.search_service.search(args.query, force_fresh=args.fresh)
    _print_json(response.model_dump(mode="json"))
    return 0


async def cmd_worker(app: Application, args: argparse.Namespace) -> int:
    if args.concurrency:
        app.worker_pool.concurrency = args.concurrency
    await app.worker_pool.start()
    await _wait_for_shutdown()
    await app.worker_pool.stop()
    return 0


async def cmd_scheduler(app: Application, args: argparse.Namespace) -> int:
    app.scheduler.start()
    if args.with_worker:
        await app.worker_pool.start()
    _print_json(app.scheduler.get_jobs_status())
    await _wait_for_shutdown()
    if args.with_worker:
        await app.worker_pool.stop()
    app.scheduler.stop()
    return 0


async def cmd_flush_metrics(app: Application, args: argparse.Namespace) -> int:
    flushed = await app.metrics.flush_metrics_to_database()
    print(f"Flushed {flushed} product counters")
    return 0


async def cmd_update_tiers(app: Application, args: argparse.Namespace) -> int:
    counts = await app.metrics.update_tiers()
    _print_json({tier.value: count for tier, count in counts.items()})
    return 0


async def cmd_track(app: Application, args: argparse.Namespace) -> int:
    await app.metrics.set_tracked(args.product_id, is_tracked=not args.off)
    state = "untracked" if args.off else "tracked (HOT)"
    print(f"{args.product_id}: {state}")
    return 0


async def cmd_queue_status(app: Application, args: argparse.Namespace) -> int:
    _print_json(await app.queue.get_queue_status())
    return 0


COMMANDS: Dict[str, Callable[[Application, argparse.Namespace], Awaitable[int]]] = {
    "init-db": cmd_init_db,
    "search": cmd_search,
    "worker": cmd_worker,
    "scheduler": cmd_scheduler,
    "flush-metrics": cmd_flush_metrics,
    "update-tiers": cmd_update_tiers,
    "track": cmd_track,
    "queue-status": cmd_queue_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pricepulse",
        description="Freshness-aware price ingestion and tiered re-scraping",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    search = sub.add_parser("search", help="Run a search through the cache")
    search.add_argument("query", help="Search query")
    search.add_argument("--fresh", action="store_true", help="Bypass the cache and scrape now")

    worker = sub.add_parser("worker", help="Run the job worker pool until interrupted")
    worker.add_argument("--concurrency", type=int, default=None, help="Max jobs in flight")

    scheduler = sub.add_parser("scheduler", help="Run the refresh scheduler until interrupted")
    scheduler.add_argument("--with-worker", action="store_true", help="Also run the worker pool in-process")

    sub.add_parser("flush-metrics", help="Drain search counters into the database")
    sub.add_parser("update-tiers", help="Recompute HOT/WARM/COLD tiers")

    track = sub.add_parser("track", help="Pin a product to the HOT tier")
    track.add_argument("product_id", help="Stable product id")
    track.add_argument("--off", action="store_true", help="Unpin instead")

    sub.add_parser("queue-status", help="Show job counts by status")
    return parser


async def run(args: argparse.Namespace, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    async with Application(settings) as app:
        return await COMMANDS[args.command](app, args)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130
    except ValueError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
