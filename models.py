"""Shared typed models for the deadline ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class RoundType(str, Enum):
    ED = "ED"
    ED2 = "ED2"
    EA = "EA"
    REA = "REA"
    RD = "RD"
    ROLLING = "ROLLING"


# Display precedence used for sorting and default selection.
ROUND_PRECEDENCE: tuple[RoundType, ...] = (
    RoundType.ED,
    RoundType.ED2,
    RoundType.REA,
    RoundType.EA,
    RoundType.RD,
    RoundType.ROLLING,
)


def sort_rounds(rounds: list[RoundType] | set[RoundType]) -> list[RoundType]:
    """Return round types ordered by display precedence."""
    return sorted(rounds, key=ROUND_PRECEDENCE.index)


class DataSource(str, Enum):
    CRAWLER = "CRAWLER"
    ADMIN = "ADMIN"


class ReconcileEffect(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


class RunState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class College:
    """Reference college row as read from storage."""

    id: int
    name: str
    short_name: str | None = None
    admissions_url: str | None = None
    usnews_rank: int | None = None


@dataclass(frozen=True, slots=True)
class RoundDates:
    deadline_date: str | None
    decision_date: str | None = None


@dataclass(frozen=True, slots=True)
class ParsedDeadlineCandidate:
    """One (college name, round, ISO date) triple emitted by an extractor."""

    college_name: str
    round_type: RoundType
    deadline_date: str
    decision_date: str | None = None


@dataclass(frozen=True, slots=True)
class DeadlineRecord:
    """Persisted deadline for one (college, round type, cycle) key."""

    college_id: int
    round_type: RoundType
    cycle: str
    deadline_date: date | None
    decision_date: date | None = None
    source: DataSource = DataSource.CRAWLER
    admin_confirmed: bool = False
    last_crawled_at: datetime | None = None
    id: int | None = None

    @property
    def key(self) -> tuple[int, RoundType, str]:
        return (self.college_id, self.round_type, self.cycle)

    @classmethod
    def admin_entry(
        cls,
        college_id: int,
        round_type: RoundType,
        cycle: str,
        deadline_date: date | None,
        decision_date: date | None = None,
        admin_confirmed: bool = True,
    ) -> DeadlineRecord:
        """Build a record the way an administrator creates one (confirmed by default)."""
        return cls(
            college_id=college_id,
            round_type=round_type,
            cycle=cycle,
            deadline_date=deadline_date,
            decision_date=decision_date,
            source=DataSource.ADMIN,
            admin_confirmed=admin_confirmed,
        )


@dataclass(frozen=True, slots=True)
class CrawlRun:
    """One ingestion pass; run_finished_at stays None while the run is in progress."""

    id: int
    run_started_at: datetime
    run_finished_at: datetime | None = None
    colleges_attempted: int = 0
    colleges_successful: int = 0
    colleges_failed: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.run_finished_at is not None


@dataclass(frozen=True, slots=True)
class CollegeOutcome:
    """Result of processing one college inside a batch."""

    college: str
    success: bool
    rounds: list[RoundType] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PdfImportResult:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    unmatched: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "unmatched": len(self.unmatched),
        }
