"""Crawl orchestration: run-state machine, batched worker pool and CrawlRun bookkeeping."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from college_matcher import match_colleges
from date_parser import current_cycle, cycle_start_year
from errors import OperationTimeoutError, RunInProgressError
from html_extractor import extract_deadlines
from models import (
    College,
    CollegeOutcome,
    CrawlRun,
    ParsedDeadlineCandidate,
    PdfImportResult,
    ReconcileEffect,
    RoundDates,
    RoundType,
    RunState,
    sort_rounds,
)
from pdf_grid import download_pdf, parse_pdf
from reconciliation import ReconciliationEngine
from storage import Storage

CRAWL_CONCURRENCY = int(os.getenv("CRAWL_CONCURRENCY", "10"))
BATCH_PAUSE_SECONDS = float(os.getenv("CRAWL_BATCH_PAUSE_SECONDS", "0.2"))
CRAWL_TIMEOUT_SECONDS = float(os.getenv("CRAWL_TIMEOUT_SECONDS", str(10 * 60)))
OPERATION_TIMEOUT_SECONDS = float(os.getenv("OPERATION_TIMEOUT_SECONDS", str(15 * 60)))
STALE_RUN_MINUTES = int(os.getenv("STALE_RUN_MINUTES", "30"))
PDF_IMPORT_MIN_DEADLINES = int(os.getenv("PDF_IMPORT_MIN_DEADLINES", "50"))

STALE_RUN_ERROR = "Stale crawl - marked as failed on startup"

LOGGER = logging.getLogger(__name__)

Extractor = Callable[[str, str, str], dict[RoundType, RoundDates]]
PdfLoader = Callable[[], bytes]
T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await with a ceiling; pending work is cancelled and OperationTimeoutError raised on expiry."""
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except OperationTimeoutError:
        raise
    except TimeoutError as exc:
        raise OperationTimeoutError(f"{operation} timed out after {seconds:g}s") from exc


@dataclass
class RunProgress:
    """Mutable per-run accumulator; counters only move after a whole batch resolves."""

    run_id: int
    mode: str
    cycle: str
    started: float = field(default_factory=time.monotonic)
    total: int = 0
    attempted: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    deadlines_found: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def rounds_found(self) -> int:
        return sum(len(found["rounds"]) for found in self.deadlines_found)

    def record(self, outcomes: list[CollegeOutcome]) -> None:
        for outcome in outcomes:
            self.attempted += 1
            if outcome.success:
                self.successful += 1
                if outcome.rounds:
                    self.deadlines_found.append(
                        {"college": outcome.college, "rounds": [r.value for r in outcome.rounds]}
                    )
            else:
                self.failed += 1
                self.errors.append({"college": outcome.college, "error": outcome.error or "unknown error"})

    def summary(self) -> dict[str, Any]:
        return {
            "total_colleges": self.total,
            "attempted": self.attempted,
            "successful": self.successful,
            "failed": self.failed,
            "rounds_found": self.rounds_found,
            "duration_seconds": round(time.monotonic() - self.started),
        }


class CrawlOrchestrator:
    """Owns the run state and drives the HTML crawl and PDF import paths.

    At most one run is RUNNING per orchestrator; a persisted unfinished run
    (from another process) also blocks new runs until it finishes or goes
    stale.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        extractor: Extractor = extract_deadlines,
        pdf_loader: PdfLoader = download_pdf,
        cycle: str | None = None,
        concurrency: int = CRAWL_CONCURRENCY,
        batch_pause: float = BATCH_PAUSE_SECONDS,
        crawl_timeout: float = CRAWL_TIMEOUT_SECONDS,
        operation_timeout: float = OPERATION_TIMEOUT_SECONDS,
        stale_after: timedelta = timedelta(minutes=STALE_RUN_MINUTES),
        pdf_import_min_deadlines: int = PDF_IMPORT_MIN_DEADLINES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if cycle is not None:
            cycle_start_year(cycle)
        self.storage = storage
        self.extractor = extractor
        self.pdf_loader = pdf_loader
        self.cycle_override = cycle
        self.concurrency = concurrency
        self.batch_pause = batch_pause
        self.crawl_timeout = crawl_timeout
        self.operation_timeout = operation_timeout
        self.stale_after = stale_after
        self.pdf_import_min_deadlines = pdf_import_min_deadlines
        self.clock = clock
        self.reconciler = ReconciliationEngine(storage, clock)
        self.state = RunState.IDLE
        self.current_run_id: int | None = None

    # entry points

    async def run_full_crawl(self) -> CrawlRun:
        """Crawl every college that has an admissions URL."""

        async def operation(progress: RunProgress) -> None:
            colleges = await self.storage.list_crawlable_colleges()
            await with_timeout(self._crawl(colleges, progress), self.crawl_timeout, "Crawl")

        return await self._execute("full", operation, ceiling=self.operation_timeout)

    async def run_missing_crawl(self) -> CrawlRun:
        """Crawl only colleges with no deadline record for the active cycle."""

        async def operation(progress: RunProgress) -> None:
            colleges = await self.storage.list_colleges_missing_deadlines(progress.cycle)
            if not colleges:
                LOGGER.info("No colleges missing deadline data", extra={"fields": {"cycle": progress.cycle}})
            await with_timeout(self._crawl(colleges, progress), self.crawl_timeout, "Missing colleges crawl")

        return await self._execute("missing", operation, ceiling=self.operation_timeout)

    async def run_pdf_import(self) -> CrawlRun:
        """Import the requirements grid, then crawl colleges still missing data."""

        async def operation(progress: RunProgress) -> None:
            LOGGER.info("Step 1: importing from requirements grid PDF")
            result = await with_timeout(
                self.import_from_pdf(progress.cycle), self.operation_timeout, "PDF import"
            )
            progress.extra["pdf_import"] = result.as_dict()

            LOGGER.info("Step 2: crawling missing colleges")
            colleges = await self.storage.list_colleges_missing_deadlines(progress.cycle)
            await with_timeout(self._crawl(colleges, progress), self.crawl_timeout, "Missing colleges crawl")

        return await self._execute("pdf-import", operation, ceiling=None)

    async def startup(self) -> CrawlRun | None:
        """Clean up abandoned runs, then import when deadline data is absent or thin."""
        await self.cleanup_stale_runs()

        total = await self.storage.count_deadlines()
        if total == 0:
            LOGGER.info("No deadline data found - running initial import", extra={"fields": {"reason": "empty_database"}})
            return await self.run_pdf_import()
        if await self.should_import_pdf():
            LOGGER.info("Supplementing deadline data from PDF", extra={"fields": {"total_deadlines": total}})
            return await self.run_pdf_import()

        LOGGER.info("Existing deadline data found - skipping startup import", extra={"fields": {"total_deadlines": total}})
        return None

    # maintenance

    async def cleanup_stale_runs(self) -> list[CrawlRun]:
        """Force-finalize runs left unfinished for longer than the staleness threshold."""
        now = self.clock()
        cleaned = await self.storage.finalize_stale_runs(now - self.stale_after, now, STALE_RUN_ERROR)
        if cleaned:
            LOGGER.warning(
                "Cleaned up %s stale crawl runs",
                len(cleaned),
                extra={
                    "fields": {
                        "count": len(cleaned),
                        "stale_runs": [{"id": r.id, "started_at": r.run_started_at.isoformat()} for r in cleaned],
                    }
                },
            )
        return cleaned

    async def should_import_pdf(self) -> bool:
        total = await self.storage.count_deadlines()
        if total < self.pdf_import_min_deadlines:
            LOGGER.info("Few deadlines stored, PDF import recommended", extra={"fields": {"total_deadlines": total}})
            return True
        LOGGER.debug("Sufficient deadline data exists", extra={"fields": {"total_deadlines": total}})
        return False

    async def active_cycle(self) -> str:
        """Cycle from the override, else the settings record, else computed and saved."""
        if self.cycle_override:
            return self.cycle_override
        cycle = await self.storage.get_active_cycle()
        if cycle:
            return cycle
        cycle = current_cycle(self.clock().date())
        await self.storage.set_active_cycle(cycle)
        LOGGER.info("Initialized active cycle %s", cycle, extra={"fields": {"cycle": cycle}})
        return cycle

    # PDF path

    async def import_from_pdf(self, cycle: str) -> PdfImportResult:
        """Download, parse, match and reconcile the requirements grid for one cycle."""
        start_year = cycle_start_year(cycle)
        LOGGER.info("Starting PDF import", extra={"fields": {"cycle": cycle, "cycle_start_year": start_year}})

        pdf_bytes = await asyncio.to_thread(self.pdf_loader)
        candidates = await asyncio.to_thread(parse_pdf, pdf_bytes, start_year)
        if not candidates:
            LOGGER.warning("No deadlines extracted from PDF")
            return PdfImportResult()

        matched = match_colleges((c.college_name for c in candidates), await self.storage.list_colleges())

        imported = skipped = errors = 0
        for candidate in candidates:
            college_id = matched.matches.get(candidate.college_name)
            if college_id is None:
                skipped += 1
                continue
            try:
                effect = await self.reconciler.reconcile(candidate, college_id, cycle)
            except Exception as exc:
                errors += 1
                LOGGER.exception(
                    "Failed to import deadline for %s: %s",
                    candidate.college_name,
                    exc,
                    extra={"fields": {"college": candidate.college_name, "round_type": candidate.round_type.value}},
                )
                continue
            if effect is ReconcileEffect.SKIPPED:
                skipped += 1
            else:
                imported += 1

        result = PdfImportResult(imported=imported, skipped=skipped, errors=errors, unmatched=matched.unmatched)
        LOGGER.info(
            "PDF import complete: imported=%s skipped=%s errors=%s",
            imported,
            skipped,
            errors,
            extra={"fields": result.as_dict()},
        )
        return result

    # HTML path

    async def _crawl(self, colleges: list[College], progress: RunProgress) -> None:
        progress.total += len(colleges)
        batches = [colleges[i : i + self.concurrency] for i in range(0, len(colleges), self.concurrency)]
        LOGGER.info(
            "Found %s colleges to crawl",
            len(colleges),
            extra={"fields": {"total_colleges": len(colleges), "concurrency": self.concurrency}},
        )

        for index, batch in enumerate(batches):
            LOGGER.info(
                "Processing batch %s/%s",
                index + 1,
                len(batches),
                extra={"fields": {"batch_number": index + 1, "total_batches": len(batches), "colleges_in_batch": len(batch)}},
            )
            outcomes = await asyncio.gather(
                *(
                    self._process_college(college, progress.cycle, index * self.concurrency + offset + 1)
                    for offset, college in enumerate(batch)
                )
            )
            progress.record(list(outcomes))
            await self.storage.update_run_progress(
                progress.run_id, progress.attempted, progress.successful, progress.failed
            )
            LOGGER.info(
                "Batch %s completed: %s/%s",
                index + 1,
                progress.attempted,
                progress.total,
                extra={
                    "fields": {
                        "batch_number": index + 1,
                        "progress": f"{progress.attempted}/{progress.total}",
                        "successful": progress.successful,
                        "failed": progress.failed,
                        "rounds_found_so_far": progress.rounds_found,
                    }
                },
            )
            if index + 1 < len(batches):
                await asyncio.sleep(self.batch_pause)

    async def _process_college(self, college: College, cycle: str, worker_id: int) -> CollegeOutcome:
        worker = f"worker-{worker_id}"
        LOGGER.info(
            "Worker processing %s",
            college.name,
            extra={"fields": {"worker": worker, "college_id": college.id, "url": college.admissions_url}},
        )
        try:
            deadlines = await asyncio.to_thread(self.extractor, college.admissions_url or "", cycle, college.name)
            reconciled: list[RoundType] = []
            for round_type, dates in deadlines.items():
                if not dates.deadline_date:
                    continue
                candidate = ParsedDeadlineCandidate(
                    college_name=college.name,
                    round_type=round_type,
                    deadline_date=dates.deadline_date,
                    decision_date=dates.decision_date,
                )
                await self.reconciler.reconcile(candidate, college.id, cycle)
                reconciled.append(round_type)
        except Exception as exc:
            LOGGER.error(
                "Worker failed to crawl %s: %s",
                college.name,
                exc,
                extra={"fields": {"worker": worker, "college": college.name, "error": str(exc)}},
            )
            return CollegeOutcome(college=college.name, success=False, error=str(exc))

        return CollegeOutcome(college=college.name, success=True, rounds=sort_rounds(reconciled))

    # run lifecycle

    async def _execute(
        self,
        mode: str,
        operation: Callable[[RunProgress], Awaitable[None]],
        ceiling: float | None,
    ) -> CrawlRun:
        # Check-and-set with no await in between: a second caller sees RUNNING.
        if self.state is RunState.RUNNING:
            raise RunInProgressError(f"Crawl run id={self.current_run_id} is already running")
        self.state = RunState.RUNNING

        try:
            await self.cleanup_stale_runs()
            in_flight = await self.storage.latest_unfinished_run()
            if in_flight is not None:
                raise RunInProgressError(f"Crawl run id={in_flight.id} is still in progress")
            cycle = await self.active_cycle()
            run = await self.storage.create_run(self.clock())
        except BaseException:
            self.state = RunState.IDLE
            raise

        self.current_run_id = run.id
        progress = RunProgress(run_id=run.id, mode=mode, cycle=cycle)
        LOGGER.info(
            "Crawl run %s starting (%s)",
            run.id,
            mode,
            extra={
                "fields": {
                    "run_id": run.id,
                    "mode": mode,
                    "cycle": cycle,
                    "concurrency": self.concurrency,
                    "timeout_seconds": ceiling,
                }
            },
        )

        try:
            if ceiling is None:
                await operation(progress)
            else:
                await with_timeout(operation(progress), ceiling, f"{mode} operation")
        except Exception as exc:
            self.state = RunState.FAILED
            LOGGER.error(
                "Crawl run %s failed: %s",
                run.id,
                exc,
                extra={"fields": {"run_id": run.id, "mode": mode, "error": str(exc)}},
            )
            await self._finalize(progress, error=str(exc) or type(exc).__name__)
            raise
        except BaseException:
            self.state = RunState.FAILED
            LOGGER.warning(
                "Crawl run %s cancelled",
                run.id,
                extra={"fields": {"run_id": run.id, "mode": mode, **progress.summary()}},
            )
            await asyncio.shield(self._finalize(progress, error="cancelled"))
            raise

        self.state = RunState.COMPLETED
        await self._finalize(progress)
        LOGGER.info(
            "Crawl run %s completed",
            run.id,
            extra={"fields": {"run_id": run.id, "mode": mode, **progress.summary()}},
        )
        finished = await self.storage.get_run(run.id)
        return finished or run

    async def _finalize(self, progress: RunProgress, error: str | None = None) -> None:
        details: dict[str, Any] = {
            "mode": progress.mode,
            "cycle": progress.cycle,
            "concurrency": self.concurrency,
            "errors": progress.errors,
            "deadlines_found": progress.deadlines_found,
            "summary": progress.summary(),
            **progress.extra,
        }
        if error:
            details["error"] = error
        try:
            await self.storage.finalize_run(
                progress.run_id,
                self.clock(),
                progress.attempted,
                progress.successful,
                progress.failed,
                details,
            )
        except Exception as exc:
            LOGGER.exception("Failed to finalize crawl run %s: %s", progress.run_id, exc)
            return
        LOGGER.info(
            "Crawl run %s finalized",
            progress.run_id,
            extra={
                "fields": {
                    "run_id": progress.run_id,
                    "attempted": progress.attempted,
                    "successful": progress.successful,
                    "failed": progress.failed,
                    "error": error,
                }
            },
        )
