"""CLI entrypoint for the admissions deadline crawler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from date_parser import cycle_start_year
from errors import RunInProgressError
from log_setup import configure_logging
from models import CrawlRun
from orchestrator import CrawlOrchestrator
from pg_storage import PostgresStorage
from storage import InMemoryStorage, Storage

LOGGER = logging.getLogger(__name__)

MODES = ("full", "missing", "pdf-import", "startup")


def _cycle_arg(value: str) -> str:
    try:
        cycle_start_year(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Crawl college admissions deadlines into PostgreSQL")
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="startup",
        help=(
            "'full': crawl every college with an admissions URL. "
            "'missing': crawl colleges without deadlines for the active cycle. "
            "'pdf-import': import the requirements grid PDF, then crawl what is still missing. "
            "'startup' (default): clean up stale runs and import only when data is thin."
        ),
    )
    parser.add_argument("--cycle", type=_cycle_arg, default=None, help="Admission cycle override, e.g. 2025-2026")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use in-memory storage instead of PostgreSQL (nothing is persisted)",
    )
    return parser.parse_args(argv)


async def run(mode: str, storage: Storage, cycle: str | None = None) -> CrawlRun | None:
    """Execute one invocation mode against the given storage."""
    orchestrator = CrawlOrchestrator(storage, cycle=cycle)
    if mode == "full":
        return await orchestrator.run_full_crawl()
    if mode == "missing":
        return await orchestrator.run_missing_crawl()
    if mode == "pdf-import":
        return await orchestrator.run_pdf_import()
    return await orchestrator.startup()


async def _run_with_postgres(mode: str, cycle: str | None) -> CrawlRun | None:
    storage = await PostgresStorage.connect()
    try:
        await storage.ensure_schema()
        return await run(mode, storage, cycle)
    finally:
        await storage.close()


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the requested mode; returns the exit code."""
    load_dotenv()
    configure_logging()
    args = parse_args(argv)

    try:
        if args.memory:
            result = asyncio.run(run(args.mode, InMemoryStorage(), args.cycle))
        else:
            result = asyncio.run(_run_with_postgres(args.mode, args.cycle))
    except RunInProgressError as exc:
        LOGGER.error("Crawl rejected: %s", exc, extra={"fields": {"mode": args.mode}})
        return 1
    except Exception as exc:
        LOGGER.exception("Crawl failed: %s", exc, extra={"fields": {"mode": args.mode}})
        return 1

    if result is None:
        LOGGER.info("Nothing to do", extra={"fields": {"mode": args.mode}})
    else:
        LOGGER.info(
            "Run %s finished: attempted=%s successful=%s failed=%s",
            result.id,
            result.colleges_attempted,
            result.colleges_successful,
            result.colleges_failed,
            extra={"fields": {"mode": args.mode, "run_id": result.id}},
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
