import asyncio
import threading
import time
from datetime import UTC, date, datetime, timedelta

import pytest

import orchestrator as orchestrator_module
from errors import FetchError, PdfExtractionError, RunInProgressError
from models import (
    College,
    DeadlineRecord,
    ParsedDeadlineCandidate,
    RoundDates,
    RoundType,
    RunState,
)
from orchestrator import STALE_RUN_ERROR, CrawlOrchestrator
from storage import InMemoryStorage

NOW = datetime(2025, 10, 1, 12, 0, tzinfo=UTC)
CYCLE = "2025-2026"


def _colleges(count: int) -> list[College]:
    return [
        College(id=i, name=f"College {i}", admissions_url=f"https://example.edu/{i}", usnews_rank=i)
        for i in range(1, count + 1)
    ]


def _orchestrator(storage: InMemoryStorage, **kwargs) -> CrawlOrchestrator:
    kwargs.setdefault("batch_pause", 0)
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("extractor", _two_rounds)
    return CrawlOrchestrator(storage, **kwargs)


def _two_rounds(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
    return {
        RoundType.RD: RoundDates(deadline_date="2026-01-05"),
        RoundType.ED: RoundDates(deadline_date="2025-11-01"),
    }


def test_full_crawl_batch_accounting_and_error_isolation() -> None:
    storage = InMemoryStorage(_colleges(25), active_cycle=CYCLE)

    def extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        if url.endswith("/7"):
            raise FetchError(url, "HTTP 404")
        return _two_rounds(url, cycle, label)

    orch = _orchestrator(storage, extractor=extractor, concurrency=10)
    run = asyncio.run(orch.run_full_crawl())

    assert orch.state is RunState.COMPLETED
    assert run.finished
    assert (run.colleges_attempted, run.colleges_successful, run.colleges_failed) == (25, 24, 1)
    assert [update[1] for update in storage.progress_updates] == [10, 20, 25]
    assert all(update[2] + update[3] == update[1] for update in storage.progress_updates)
    assert run.details["errors"] == [{"college": "College 7", "error": "HTTP 404 (https://example.edu/7)"}]
    assert run.details["mode"] == "full"
    assert run.details["cycle"] == CYCLE
    assert run.details["summary"]["rounds_found"] == 48
    assert {"college": "College 1", "rounds": ["ED", "RD"]} in run.details["deadlines_found"]
    assert len(storage.deadlines) == 48


def test_full_crawl_skips_rounds_without_a_date() -> None:
    storage = InMemoryStorage(_colleges(1), active_cycle=CYCLE)

    def extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        return {RoundType.EA: RoundDates(deadline_date=None), RoundType.RD: RoundDates(deadline_date="2026-01-05")}

    run = asyncio.run(_orchestrator(storage, extractor=extractor).run_full_crawl())

    assert list(storage.deadlines) == [(1, RoundType.RD, CYCLE)]
    assert run.details["deadlines_found"] == [{"college": "College 1", "rounds": ["RD"]}]
    assert run.details["summary"]["rounds_found"] == 1


def test_missing_crawl_only_visits_colleges_without_deadlines() -> None:
    storage = InMemoryStorage(_colleges(3), active_cycle=CYCLE)
    visited: list[str] = []

    def extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        visited.append(label)
        return {}

    async def scenario():
        await storage.insert_deadline(DeadlineRecord(2, RoundType.ED, CYCLE, date(2025, 11, 1)))
        return await _orchestrator(storage, extractor=extractor).run_missing_crawl()

    run = asyncio.run(scenario())

    assert sorted(visited) == ["College 1", "College 3"]
    assert run.colleges_attempted == 2
    assert run.details["deadlines_found"] == []


def test_second_run_is_rejected_while_first_is_running() -> None:
    storage = InMemoryStorage(_colleges(2), active_cycle=CYCLE)
    release = threading.Event()

    def slow_extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        release.wait(5)
        return {}

    orch = _orchestrator(storage, extractor=slow_extractor)

    async def scenario():
        first = asyncio.create_task(orch.run_full_crawl())
        await asyncio.sleep(0.05)
        assert orch.state is RunState.RUNNING
        try:
            with pytest.raises(RunInProgressError):
                await orch.run_missing_crawl()
            with pytest.raises(RunInProgressError):
                await orch.run_pdf_import()
        finally:
            release.set()
        return await first

    run = asyncio.run(scenario())

    assert len(storage.runs) == 1
    assert run.finished
    assert orch.state is RunState.COMPLETED


def test_persisted_unfinished_run_blocks_new_runs() -> None:
    storage = InMemoryStorage(_colleges(1), active_cycle=CYCLE)
    asyncio.run(storage.create_run(NOW - timedelta(minutes=5)))
    orch = _orchestrator(storage)

    with pytest.raises(RunInProgressError):
        asyncio.run(orch.run_full_crawl())

    assert orch.state is RunState.IDLE
    assert len(storage.runs) == 1


def test_cleanup_stale_runs_finalizes_abandoned_runs() -> None:
    storage = InMemoryStorage(_colleges(1), active_cycle=CYCLE)
    stale = asyncio.run(storage.create_run(NOW - timedelta(minutes=45)))
    fresh = asyncio.run(storage.create_run(NOW - timedelta(minutes=10)))

    cleaned = asyncio.run(_orchestrator(storage).cleanup_stale_runs())

    assert [run.id for run in cleaned] == [stale.id]
    assert storage.runs[stale.id].run_finished_at == NOW
    assert storage.runs[stale.id].details["error"] == STALE_RUN_ERROR
    assert not storage.runs[fresh.id].finished


def test_stale_run_does_not_block_new_run() -> None:
    storage = InMemoryStorage(_colleges(1), active_cycle=CYCLE)
    stale = asyncio.run(storage.create_run(NOW - timedelta(hours=1)))

    run = asyncio.run(_orchestrator(storage).run_full_crawl())

    assert storage.runs[stale.id].finished
    assert run.id != stale.id
    assert run.colleges_successful == 1


class _BrokenStorage(InMemoryStorage):
    broken = True

    async def list_crawlable_colleges(self):
        if self.broken:
            raise RuntimeError("database unavailable")
        return await super().list_crawlable_colleges()


def test_fatal_error_finalizes_run_and_reraises() -> None:
    storage = _BrokenStorage(_colleges(1), active_cycle=CYCLE)
    orch = _orchestrator(storage)

    with pytest.raises(RuntimeError, match="database unavailable"):
        asyncio.run(orch.run_full_crawl())

    (run,) = storage.runs.values()
    assert orch.state is RunState.FAILED
    assert run.finished
    assert run.details["error"] == "database unavailable"


def test_crawl_timeout_cancels_work_and_records_error() -> None:
    storage = InMemoryStorage(_colleges(2), active_cycle=CYCLE)

    def slow_extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        time.sleep(0.3)
        return _two_rounds(url, cycle, label)

    orch = _orchestrator(storage, extractor=slow_extractor, crawl_timeout=0.05)

    with pytest.raises(TimeoutError, match="Crawl timed out"):
        asyncio.run(orch.run_full_crawl())

    (run,) = storage.runs.values()
    assert orch.state is RunState.FAILED
    assert run.finished
    assert "timed out" in run.details["error"]
    assert storage.deadlines == {}


def test_crawl_timeout_keeps_counts_of_completed_batches() -> None:
    storage = InMemoryStorage(_colleges(3), active_cycle=CYCLE)

    def stalls_on_second(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        if label == "College 2":
            time.sleep(0.5)
        return _two_rounds(url, cycle, label)

    orch = _orchestrator(storage, extractor=stalls_on_second, concurrency=1, crawl_timeout=0.2)

    with pytest.raises(TimeoutError, match="Crawl timed out"):
        asyncio.run(orch.run_full_crawl())

    (run,) = storage.runs.values()
    assert orch.state is RunState.FAILED
    assert run.finished
    assert (run.colleges_attempted, run.colleges_successful, run.colleges_failed) == (1, 1, 0)
    assert storage.progress_updates == [(run.id, 1, 1, 0)]
    assert "timed out" in run.details["error"]
    assert run.details["deadlines_found"] == [{"college": "College 1", "rounds": ["ED", "RD"]}]
    assert {key[0] for key in storage.deadlines} == {1}


def test_cancelled_run_is_finalized_and_allows_next_run() -> None:
    storage = InMemoryStorage(_colleges(2), active_cycle=CYCLE)
    release = threading.Event()

    def blocked(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        release.wait(2)
        return _two_rounds(url, cycle, label)

    orch = _orchestrator(storage, extractor=blocked)

    async def cancel_mid_batch():
        task = asyncio.create_task(orch.run_full_crawl())
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

    asyncio.run(cancel_mid_batch())

    (cancelled,) = storage.runs.values()
    assert orch.state is RunState.FAILED
    assert cancelled.finished
    assert cancelled.details["error"] == "cancelled"
    assert cancelled.colleges_attempted == 0

    orch.extractor = _two_rounds
    run = asyncio.run(orch.run_full_crawl())

    assert orch.state is RunState.COMPLETED
    assert run.id != cancelled.id
    assert len(storage.runs) == 2


def test_failed_state_allows_next_run() -> None:
    storage = _BrokenStorage(_colleges(1), active_cycle=CYCLE)
    orch = _orchestrator(storage)

    with pytest.raises(RuntimeError):
        asyncio.run(orch.run_full_crawl())
    storage.broken = False
    run = asyncio.run(orch.run_full_crawl())

    assert orch.state is RunState.COMPLETED
    assert run.colleges_attempted == 1


def _grid_candidates() -> list[ParsedDeadlineCandidate]:
    return [
        ParsedDeadlineCandidate("Amherst College", RoundType.ED, "2025-11-01"),
        ParsedDeadlineCandidate("Amherst College", RoundType.RD, "2026-01-05"),
        ParsedDeadlineCandidate("Unknown U", RoundType.ED, "2025-11-01"),
    ]


def _grid_colleges() -> list[College]:
    return [
        College(id=1, name="Amherst College", admissions_url="https://amherst.edu", usnews_rank=1),
        College(id=2, name="Bowdoin College", admissions_url="https://bowdoin.edu", usnews_rank=2),
    ]


def test_pdf_import_then_crawls_remaining_colleges(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)
    visited: list[str] = []
    monkeypatch.setattr(orchestrator_module, "parse_pdf", lambda pdf_bytes, start_year: _grid_candidates())

    def extractor(url: str, cycle: str, label: str) -> dict[RoundType, RoundDates]:
        visited.append(label)
        return {}

    orch = _orchestrator(storage, extractor=extractor, pdf_loader=lambda: b"%PDF")
    run = asyncio.run(orch.run_pdf_import())

    assert run.details["pdf_import"] == {"imported": 2, "skipped": 1, "errors": 0, "unmatched": 1}
    assert run.details["mode"] == "pdf-import"
    assert visited == ["Bowdoin College"]
    assert run.colleges_attempted == 1
    assert storage.deadlines[(1, RoundType.RD, CYCLE)].deadline_date == date(2026, 1, 5)


def test_import_from_pdf_respects_admin_lock(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)
    monkeypatch.setattr(orchestrator_module, "parse_pdf", lambda pdf_bytes, start_year: _grid_candidates())

    async def scenario():
        await storage.insert_deadline(DeadlineRecord.admin_entry(1, RoundType.ED, CYCLE, date(2025, 11, 3)))
        return await _orchestrator(storage, pdf_loader=lambda: b"%PDF").import_from_pdf(CYCLE)

    result = asyncio.run(scenario())

    assert (result.imported, result.skipped, result.errors) == (1, 2, 0)
    assert result.unmatched == ["Unknown U"]
    assert storage.deadlines[(1, RoundType.ED, CYCLE)].deadline_date == date(2025, 11, 3)


def test_import_from_pdf_with_no_candidates(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)
    monkeypatch.setattr(orchestrator_module, "parse_pdf", lambda pdf_bytes, start_year: [])

    result = asyncio.run(_orchestrator(storage, pdf_loader=lambda: b"%PDF").import_from_pdf(CYCLE))

    assert result.as_dict() == {"imported": 0, "skipped": 0, "errors": 0, "unmatched": 0}


def test_pdf_extraction_failure_fails_the_run(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)

    def broken_parse(pdf_bytes: bytes, start_year: int):
        raise PdfExtractionError("PDF text extraction failed: pdfplumber: bad")

    monkeypatch.setattr(orchestrator_module, "parse_pdf", broken_parse)
    orch = _orchestrator(storage, pdf_loader=lambda: b"junk")

    with pytest.raises(PdfExtractionError):
        asyncio.run(orch.run_pdf_import())

    (run,) = storage.runs.values()
    assert run.finished
    assert run.details["error"].startswith("PDF text extraction failed")
    assert orch.state is RunState.FAILED


def test_startup_imports_when_store_is_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)
    monkeypatch.setattr(orchestrator_module, "parse_pdf", lambda pdf_bytes, start_year: _grid_candidates())

    run = asyncio.run(_orchestrator(storage, pdf_loader=lambda: b"%PDF").startup())

    assert run is not None
    assert run.details["mode"] == "pdf-import"
    assert len(storage.deadlines) == 4


def test_startup_skips_import_when_data_is_sufficient() -> None:
    storage = InMemoryStorage(_grid_colleges(), active_cycle=CYCLE)

    def loader() -> bytes:
        raise AssertionError("PDF should not be downloaded")

    async def scenario():
        await storage.insert_deadline(DeadlineRecord(1, RoundType.ED, CYCLE, date(2025, 11, 1)))
        await storage.insert_deadline(DeadlineRecord(2, RoundType.ED, CYCLE, date(2025, 11, 1)))
        orch = _orchestrator(storage, pdf_loader=loader, pdf_import_min_deadlines=2)
        return await orch.startup(), await orch.should_import_pdf()

    result, should_import = asyncio.run(scenario())

    assert result is None
    assert should_import is False
    assert storage.runs == {}


def test_active_cycle_is_computed_and_saved_when_missing() -> None:
    storage = InMemoryStorage()

    cycle = asyncio.run(_orchestrator(storage).active_cycle())

    assert cycle == CYCLE
    assert storage.active_cycle == CYCLE


def test_cycle_override_wins_over_settings() -> None:
    storage = InMemoryStorage(active_cycle=CYCLE)

    assert asyncio.run(_orchestrator(storage, cycle="2026-2027").active_cycle()) == "2026-2027"


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(ValueError):
        _orchestrator(InMemoryStorage(), concurrency=0)
    with pytest.raises(ValueError):
        _orchestrator(InMemoryStorage(), cycle="2026")
