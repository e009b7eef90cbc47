"""Upsert policy for extracted deadlines against persisted state.

Every write of a deadline date goes through ReconciliationEngine. Records an
administrator confirmed are never overwritten; ingestion may only refresh
their last_crawled_at timestamp.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Callable

from models import DataSource, DeadlineRecord, ParsedDeadlineCandidate, ReconcileEffect
from storage import Storage

LOGGER = logging.getLogger(__name__)

# One retry covers losing an insert race to a concurrent writer.
MAX_ATTEMPTS = 2


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _as_text(value: date | None) -> str | None:
    return value.isoformat() if value else None


class ReconciliationEngine:
    def __init__(self, storage: Storage, clock: Callable[[], datetime] = _utcnow) -> None:
        self.storage = storage
        self.clock = clock

    async def reconcile(self, candidate: ParsedDeadlineCandidate, college_id: int, cycle: str) -> ReconcileEffect:
        """Insert, update or skip one candidate for (college_id, round_type, cycle)."""
        new_date = date.fromisoformat(candidate.deadline_date)
        fields = {
            "college_id": college_id,
            "college": candidate.college_name,
            "round_type": candidate.round_type.value,
            "cycle": cycle,
            "deadline_date": candidate.deadline_date,
        }

        for _ in range(MAX_ATTEMPTS):
            now = self.clock()
            existing = await self.storage.get_deadline(college_id, candidate.round_type, cycle)

            if existing is None:
                inserted = await self.storage.insert_deadline(
                    DeadlineRecord(
                        college_id=college_id,
                        round_type=candidate.round_type,
                        cycle=cycle,
                        deadline_date=new_date,
                        decision_date=_as_date(candidate.decision_date),
                        source=DataSource.CRAWLER,
                        admin_confirmed=False,
                        last_crawled_at=now,
                    )
                )
                if inserted is None:
                    LOGGER.debug("Insert lost to a concurrent writer, re-reading", extra={"fields": fields})
                    continue
                LOGGER.info(
                    "Inserted %s deadline for %s: %s",
                    candidate.round_type.value,
                    candidate.college_name,
                    candidate.deadline_date,
                    extra={"fields": fields},
                )
                return ReconcileEffect.INSERTED

            return await self._reconcile_existing(existing, new_date, now, fields)

        raise RuntimeError(
            f"Could not reconcile {candidate.round_type.value} for college_id={college_id} cycle={cycle}"
        )

    async def _reconcile_existing(
        self,
        existing: DeadlineRecord,
        new_date: date,
        now: datetime,
        fields: dict[str, object],
    ) -> ReconcileEffect:
        fields = {**fields, "existing_date": _as_text(existing.deadline_date)}

        if existing.admin_confirmed:
            await self.storage.touch_deadline(existing.id, now)
            LOGGER.debug("Skipped admin-confirmed deadline", extra={"fields": fields})
            return ReconcileEffect.SKIPPED

        if existing.deadline_date == new_date:
            await self.storage.touch_deadline(existing.id, now)
            LOGGER.debug("Deadline unchanged", extra={"fields": fields})
            return ReconcileEffect.SKIPPED

        if not await self.storage.update_crawled_deadline(existing.id, new_date, now):
            # Confirmed by an administrator between our read and write.
            LOGGER.debug("Skipped deadline locked during update", extra={"fields": fields})
            return ReconcileEffect.SKIPPED

        await self.storage.log_round_change(
            existing.id,
            "deadline_date",
            _as_text(existing.deadline_date),
            new_date.isoformat(),
            DataSource.CRAWLER,
        )
        LOGGER.info(
            "Updated %s deadline for %s: %s -> %s",
            fields["round_type"],
            fields["college"],
            fields["existing_date"],
            new_date.isoformat(),
            extra={"fields": fields},
        )
        return ReconcileEffect.UPDATED
