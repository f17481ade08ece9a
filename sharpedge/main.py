"""
SharpEdge - Main Entry Point.

Runs one scheduled tick and prints its summary as JSON:

    signals    Detect exchange mispricings against sharp fair value
    watch      Track probability movement and escalate scan frequency
    correlate  Group active signals into multi-leg opportunities
    settle     Reconcile emitted signals against market resolution

Usage:
    python -m sharpedge.main signals
    python -m sharpedge.main settle --force

Environment Variables:
    ODDS_API__API_KEY  - Required for signals/watch: The Odds API key
    DATABASE_PATH      - SQLite file (default ./data/sharpedge.db)
    LOG_LEVEL          - DEBUG|INFO|WARNING|ERROR
"""

import argparse
import asyncio
import sys
from typing import Optional

import orjson
import structlog
from dotenv import load_dotenv

from config.settings import Settings, get_settings
from sharpedge.errors import SharpEdgeError
from sharpedge.jobs import run_correlate, run_settle, run_signals, run_watch
from sharpedge.models.schemas import TickSummary
from sharpedge.storage.store import Store
from sharpedge.utils.logging import bind_tick, setup_logging

logger = structlog.get_logger()

JOBS = ("signals", "watch", "correlate", "settle")


async def run_job(job: str, settings: Settings, store: Store, force: bool = False) -> TickSummary:
    """Dispatch one tick by name."""
    if job == "signals":
        return await run_signals(settings, store)
    if job == "watch":
        return await run_watch(settings, store)
    if job == "correlate":
        return await run_correlate(settings, store)
    if job == "settle":
        return await run_settle(settings, store, force=force)
    raise ValueError(f"Unknown job: {job}")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sharpedge", description="SharpEdge signal pipeline")
    parser.add_argument("job", choices=JOBS, help="Tick to run")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Settle signals regardless of age",
    )
    parser.add_argument("--db", default=None, help="Override DATABASE_PATH")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)
    settings = get_settings()

    setup_logging(settings.log_level, json_output=settings.log_json)
    bind_tick(args.job)

    store = Store(args.db or settings.database_path)
    try:
        summary = asyncio.run(run_job(args.job, settings, store, force=args.force))
    except SharpEdgeError as e:
        logger.error("Tick failed", error=e.reason, error_type=type(e).__name__)
        print(orjson.dumps({"job": args.job, "error": e.reason}).decode())
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    finally:
        store.close()

    print(orjson.dumps(summary.to_dict(), option=orjson.OPT_INDENT_2).decode())
    return 0


if __name__ == "__main__":
    sys.exit(main())
