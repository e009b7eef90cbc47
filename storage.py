"""Storage interface consumed by the pipeline, plus an in-memory implementation."""

from __future__ import annotations

import copy
import itertools
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Protocol

from models import College, CrawlRun, DataSource, DeadlineRecord, RoundType


class Storage(Protocol):
    """Persistence operations the pipeline relies on.

    Inserts must be conditional on the (college_id, round_type, cycle)
    uniqueness key and updates of crawled dates conditional on
    admin_confirmed being false, so concurrent writers cannot create
    duplicates or overwrite a confirmed deadline.
    """

    async def list_colleges(self) -> list[College]: ...

    async def list_crawlable_colleges(self) -> list[College]: ...

    async def list_colleges_missing_deadlines(self, cycle: str) -> list[College]: ...

    async def get_deadline(self, college_id: int, round_type: RoundType, cycle: str) -> DeadlineRecord | None: ...

    async def insert_deadline(self, record: DeadlineRecord) -> DeadlineRecord | None:
        """Insert unless the key exists; None when another writer got there first."""

    async def update_crawled_deadline(self, record_id: int, deadline_date: date, crawled_at: datetime) -> bool:
        """Set a crawler date unless the record is admin-confirmed; True if a row changed."""

    async def touch_deadline(self, record_id: int, crawled_at: datetime) -> None: ...

    async def count_deadlines(self) -> int: ...

    async def log_round_change(
        self,
        record_id: int,
        field_changed: str,
        old_value: str | None,
        new_value: str | None,
        changed_by: DataSource,
    ) -> None: ...

    async def get_active_cycle(self) -> str | None: ...

    async def set_active_cycle(self, cycle: str) -> None: ...

    async def create_run(self, started_at: datetime) -> CrawlRun: ...

    async def update_run_progress(self, run_id: int, attempted: int, successful: int, failed: int) -> None: ...

    async def finalize_run(
        self,
        run_id: int,
        finished_at: datetime,
        attempted: int,
        successful: int,
        failed: int,
        details: dict[str, Any],
    ) -> None: ...

    async def get_run(self, run_id: int) -> CrawlRun | None: ...

    async def latest_unfinished_run(self) -> CrawlRun | None: ...

    async def finalize_stale_runs(self, started_before: datetime, finished_at: datetime, error: str) -> list[CrawlRun]:
        """Close every unfinished run started before the cutoff, annotating its details."""


def _rank_key(college: College) -> tuple[bool, int, int]:
    return (college.usnews_rank is None, college.usnews_rank or 0, college.id)


class InMemoryStorage:
    """Dict-backed Storage used for tests and dry runs."""

    def __init__(self, colleges: list[College] | None = None, active_cycle: str | None = None) -> None:
        self.colleges: dict[int, College] = {c.id: c for c in colleges or []}
        self.deadlines: dict[tuple[int, RoundType, str], DeadlineRecord] = {}
        self.runs: dict[int, CrawlRun] = {}
        self.change_log: list[dict[str, Any]] = []
        self.active_cycle = active_cycle
        self.progress_updates: list[tuple[int, int, int, int]] = []
        self._deadline_ids = itertools.count(1)
        self._run_ids = itertools.count(1)

    # colleges

    async def list_colleges(self) -> list[College]:
        return sorted(self.colleges.values(), key=_rank_key)

    async def list_crawlable_colleges(self) -> list[College]:
        return [c for c in await self.list_colleges() if c.admissions_url]

    async def list_colleges_missing_deadlines(self, cycle: str) -> list[College]:
        covered = {college_id for college_id, _, record_cycle in self.deadlines if record_cycle == cycle}
        return [c for c in await self.list_crawlable_colleges() if c.id not in covered]

    # deadlines

    async def get_deadline(self, college_id: int, round_type: RoundType, cycle: str) -> DeadlineRecord | None:
        return self.deadlines.get((college_id, RoundType(round_type), cycle))

    async def insert_deadline(self, record: DeadlineRecord) -> DeadlineRecord | None:
        if record.key in self.deadlines:
            return None
        stored = replace(record, id=next(self._deadline_ids))
        self.deadlines[stored.key] = stored
        return stored

    def _by_id(self, record_id: int) -> DeadlineRecord:
        for record in self.deadlines.values():
            if record.id == record_id:
                return record
        raise KeyError(f"Unknown deadline record id={record_id}")

    async def update_crawled_deadline(self, record_id: int, deadline_date: date, crawled_at: datetime) -> bool:
        record = self._by_id(record_id)
        if record.admin_confirmed:
            return False
        self.deadlines[record.key] = replace(
            record,
            deadline_date=deadline_date,
            source=DataSource.CRAWLER,
            last_crawled_at=crawled_at,
        )
        return True

    async def touch_deadline(self, record_id: int, crawled_at: datetime) -> None:
        record = self._by_id(record_id)
        self.deadlines[record.key] = replace(record, last_crawled_at=crawled_at)

    async def count_deadlines(self) -> int:
        return len(self.deadlines)

    async def log_round_change(
        self,
        record_id: int,
        field_changed: str,
        old_value: str | None,
        new_value: str | None,
        changed_by: DataSource,
    ) -> None:
        self.change_log.append(
            {
                "college_round_id": record_id,
                "field_changed": field_changed,
                "old_value": old_value,
                "new_value": new_value,
                "changed_by": changed_by,
            }
        )

    # settings

    async def get_active_cycle(self) -> str | None:
        return self.active_cycle

    async def set_active_cycle(self, cycle: str) -> None:
        self.active_cycle = cycle

    # crawl runs

    async def create_run(self, started_at: datetime) -> CrawlRun:
        run = CrawlRun(id=next(self._run_ids), run_started_at=started_at)
        self.runs[run.id] = run
        return run

    async def update_run_progress(self, run_id: int, attempted: int, successful: int, failed: int) -> None:
        self.progress_updates.append((run_id, attempted, successful, failed))
        self.runs[run_id] = replace(
            self.runs[run_id],
            colleges_attempted=attempted,
            colleges_successful=successful,
            colleges_failed=failed,
        )

    async def finalize_run(
        self,
        run_id: int,
        finished_at: datetime,
        attempted: int,
        successful: int,
        failed: int,
        details: dict[str, Any],
    ) -> None:
        self.runs[run_id] = replace(
            self.runs[run_id],
            run_finished_at=finished_at,
            colleges_attempted=attempted,
            colleges_successful=successful,
            colleges_failed=failed,
            details=copy.deepcopy(details),
        )

    async def get_run(self, run_id: int) -> CrawlRun | None:
        return self.runs.get(run_id)

    async def latest_unfinished_run(self) -> CrawlRun | None:
        unfinished = [run for run in self.runs.values() if not run.finished]
        return max(unfinished, key=lambda run: run.run_started_at, default=None)

    async def finalize_stale_runs(self, started_before: datetime, finished_at: datetime, error: str) -> list[CrawlRun]:
        cleaned: list[CrawlRun] = []
        for run in list(self.runs.values()):
            if run.finished or run.run_started_at >= started_before:
                continue
            closed = replace(run, run_finished_at=finished_at, details={**run.details, "error": error})
            self.runs[run.id] = closed
            cleaned.append(closed)
        return cleaned
