"""PostgreSQL implementation of the Storage interface (psycopg 3, async)."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from models import College, CrawlRun, DataSource, DeadlineRecord, RoundType

LOGGER = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
REQUIRED_ENV_VARS = ("DB_HOST", "DB_NAME", "DB_USER")

COLLEGE_COLUMNS = "id, name, short_name, admissions_url, usnews_rank"
ROUND_COLUMNS = (
    "id, college_id, round_type, cycle, deadline_date, decision_date, "
    "source, admin_confirmed, last_crawled_at"
)
RUN_COLUMNS = (
    "id, run_started_at, run_finished_at, colleges_attempted, "
    "colleges_successful, colleges_failed, details"
)
RANK_ORDER = "ORDER BY usnews_rank ASC NULLS LAST, id ASC"


def get_db_config() -> dict[str, Any]:
    """Return connection kwargs, preferring DATABASE_URL when set."""
    url = os.getenv("DATABASE_URL")
    if url:
        return {"conninfo": url}
    missing = [name for name in REQUIRED_ENV_VARS if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"Missing required DB environment variables: {', '.join(missing)}")
    cfg: dict[str, Any] = {
        "host": os.getenv("DB_HOST"),
        "dbname": os.getenv("DB_NAME"),
        "user": os.getenv("DB_USER"),
    }
    password = os.getenv("DB_PASSWORD")
    if password:
        cfg["password"] = password
    port = os.getenv("DB_PORT")
    if port:
        cfg["port"] = int(port) if port.isdigit() else port
    return cfg


def _college(row: dict[str, Any]) -> College:
    return College(
        id=row["id"],
        name=row["name"],
        short_name=row["short_name"],
        admissions_url=row["admissions_url"],
        usnews_rank=row["usnews_rank"],
    )


def _deadline(row: dict[str, Any]) -> DeadlineRecord:
    return DeadlineRecord(
        id=row["id"],
        college_id=row["college_id"],
        round_type=RoundType(row["round_type"]),
        cycle=row["cycle"],
        deadline_date=row["deadline_date"],
        decision_date=row["decision_date"],
        source=DataSource(row["source"]),
        admin_confirmed=bool(row["admin_confirmed"]),
        last_crawled_at=row["last_crawled_at"],
    )


def _run(row: dict[str, Any]) -> CrawlRun:
    return CrawlRun(
        id=row["id"],
        run_started_at=row["run_started_at"],
        run_finished_at=row["run_finished_at"],
        colleges_attempted=row["colleges_attempted"],
        colleges_successful=row["colleges_successful"],
        colleges_failed=row["colleges_failed"],
        details=row["details"] or {},
    )


class PostgresStorage:
    """Storage over a single autocommit AsyncConnection.

    Every statement is parameterized. Inserts rely on the
    (college_id, round_type, cycle) unique constraint and crawler updates
    carry `admin_confirmed = false` in their WHERE clause, so the database
    enforces both rules even with several writers.
    """

    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self.conn = conn

    @classmethod
    async def connect(cls) -> "PostgresStorage":
        conn = await psycopg.AsyncConnection.connect(**get_db_config(), autocommit=True)
        return cls(conn)

    async def close(self) -> None:
        await self.conn.close()

    async def ensure_schema(self) -> None:
        """Apply schema.sql; every statement in it is idempotent."""
        await self._execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        LOGGER.info("Database schema ensured", extra={"fields": {"schema": SCHEMA_PATH.name}})

    async def _execute(self, query: str, params: Any = None) -> int:
        async with self.conn.cursor() as cur:
            await cur.execute(query, params)
            return cur.rowcount

    async def _fetchone(self, query: str, params: Any = None) -> dict[str, Any] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            return await cur.fetchone()

    async def _fetchall(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    # colleges

    async def list_colleges(self) -> list[College]:
        rows = await self._fetchall(f"SELECT {COLLEGE_COLUMNS} FROM colleges {RANK_ORDER}")
        return [_college(row) for row in rows]

    async def list_crawlable_colleges(self) -> list[College]:
        rows = await self._fetchall(
            f"SELECT {COLLEGE_COLUMNS} FROM colleges "
            f"WHERE admissions_url IS NOT NULL AND admissions_url <> '' {RANK_ORDER}"
        )
        return [_college(row) for row in rows]

    async def list_colleges_missing_deadlines(self, cycle: str) -> list[College]:
        rows = await self._fetchall(
            f"SELECT {COLLEGE_COLUMNS} FROM colleges c "
            "WHERE c.admissions_url IS NOT NULL AND c.admissions_url <> '' "
            "AND NOT EXISTS ("
            "SELECT 1 FROM college_rounds cr WHERE cr.college_id = c.id AND cr.cycle = %s"
            f") {RANK_ORDER}",
            (cycle,),
        )
        return [_college(row) for row in rows]

    # deadlines

    async def get_deadline(self, college_id: int, round_type: RoundType, cycle: str) -> DeadlineRecord | None:
        row = await self._fetchone(
            f"SELECT {ROUND_COLUMNS} FROM college_rounds "
            "WHERE college_id = %s AND round_type = %s AND cycle = %s",
            (college_id, RoundType(round_type).value, cycle),
        )
        return _deadline(row) if row else None

    async def insert_deadline(self, record: DeadlineRecord) -> DeadlineRecord | None:
        row = await self._fetchone(
            "INSERT INTO college_rounds "
            "(college_id, round_type, cycle, deadline_date, decision_date, source, admin_confirmed, last_crawled_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (college_id, round_type, cycle) DO NOTHING "
            f"RETURNING {ROUND_COLUMNS}",
            (
                record.college_id,
                record.round_type.value,
                record.cycle,
                record.deadline_date,
                record.decision_date,
                record.source.value,
                record.admin_confirmed,
                record.last_crawled_at,
            ),
        )
        return _deadline(row) if row else None

    async def update_crawled_deadline(self, record_id: int, deadline_date: date, crawled_at: datetime) -> bool:
        changed = await self._execute(
            "UPDATE college_rounds "
            "SET deadline_date = %s, source = %s, last_crawled_at = %s, updated_at = CURRENT_TIMESTAMP "
            "WHERE id = %s AND admin_confirmed = false",
            (deadline_date, DataSource.CRAWLER.value, crawled_at, record_id),
        )
        return changed > 0

    async def touch_deadline(self, record_id: int, crawled_at: datetime) -> None:
        await self._execute(
            "UPDATE college_rounds SET last_crawled_at = %s WHERE id = %s",
            (crawled_at, record_id),
        )

    async def count_deadlines(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS count FROM college_rounds")
        return int(row["count"]) if row else 0

    async def log_round_change(
        self,
        record_id: int,
        field_changed: str,
        old_value: str | None,
        new_value: str | None,
        changed_by: DataSource,
    ) -> None:
        await self._execute(
            "INSERT INTO college_round_change_logs "
            "(college_round_id, field_changed, old_value, new_value, changed_by) "
            "VALUES (%s, %s, %s, %s, %s)",
            (record_id, field_changed, old_value, new_value, DataSource(changed_by).value),
        )

    # settings

    async def get_active_cycle(self) -> str | None:
        row = await self._fetchone("SELECT current_cycle FROM system_settings WHERE id = 1")
        return row["current_cycle"] if row else None

    async def set_active_cycle(self, cycle: str) -> None:
        await self._execute(
            "INSERT INTO system_settings (id, current_cycle) VALUES (1, %s) "
            "ON CONFLICT (id) DO UPDATE SET current_cycle = EXCLUDED.current_cycle, "
            "updated_at = CURRENT_TIMESTAMP",
            (cycle,),
        )

    # crawl runs

    async def create_run(self, started_at: datetime) -> CrawlRun:
        row = await self._fetchone(
            "INSERT INTO crawl_logs (run_started_at, details) VALUES (%s, %s) "
            f"RETURNING {RUN_COLUMNS}",
            (started_at, Jsonb({})),
        )
        if row is None:
            raise RuntimeError("Failed to create crawl log")
        return _run(row)

    async def update_run_progress(self, run_id: int, attempted: int, successful: int, failed: int) -> None:
        await self._execute(
            "UPDATE crawl_logs SET colleges_attempted = %s, colleges_successful = %s, "
            "colleges_failed = %s WHERE id = %s",
            (attempted, successful, failed, run_id),
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
        await self._execute(
            "UPDATE crawl_logs SET run_finished_at = %s, colleges_attempted = %s, "
            "colleges_successful = %s, colleges_failed = %s, details = %s WHERE id = %s",
            (finished_at, attempted, successful, failed, Jsonb(details), run_id),
        )

    async def get_run(self, run_id: int) -> CrawlRun | None:
        row = await self._fetchone(f"SELECT {RUN_COLUMNS} FROM crawl_logs WHERE id = %s", (run_id,))
        return _run(row) if row else None

    async def latest_unfinished_run(self) -> CrawlRun | None:
        row = await self._fetchone(
            f"SELECT {RUN_COLUMNS} FROM crawl_logs WHERE run_finished_at IS NULL "
            "ORDER BY run_started_at DESC LIMIT 1"
        )
        return _run(row) if row else None

    async def finalize_stale_runs(self, started_before: datetime, finished_at: datetime, error: str) -> list[CrawlRun]:
        rows = await self._fetchall(
            "UPDATE crawl_logs SET run_finished_at = %s, "
            "details = COALESCE(details, '{}'::jsonb) || %s "
            "WHERE run_finished_at IS NULL AND run_started_at < %s "
            f"RETURNING {RUN_COLUMNS}",
            (finished_at, Jsonb({"error": error}), started_before),
        )
        return [_run(row) for row in rows]
