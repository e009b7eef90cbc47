from datetime import UTC, date, datetime

from models import CrawlRun, DataSource, DeadlineRecord, PdfImportResult, RoundType, sort_rounds


def test_sort_rounds_uses_display_precedence() -> None:
    rounds = {RoundType.ROLLING, RoundType.RD, RoundType.EA, RoundType.REA, RoundType.ED2, RoundType.ED}

    assert sort_rounds(rounds) == [
        RoundType.ED,
        RoundType.ED2,
        RoundType.REA,
        RoundType.EA,
        RoundType.RD,
        RoundType.ROLLING,
    ]


def test_admin_entry_defaults_to_confirmed_admin_source() -> None:
    record = DeadlineRecord.admin_entry(4, RoundType.EA, "2025-2026", date(2025, 11, 1))

    assert record.source is DataSource.ADMIN
    assert record.admin_confirmed is True
    assert record.key == (4, RoundType.EA, "2025-2026")
    assert record.id is None


def test_crawl_run_finished_flag() -> None:
    run = CrawlRun(id=1, run_started_at=datetime(2025, 10, 1, tzinfo=UTC))

    assert run.finished is False
    assert run.details == {}


def test_pdf_import_result_reports_unmatched_count() -> None:
    result = PdfImportResult(imported=3, skipped=2, errors=1, unmatched=["A", "B"])

    assert result.as_dict() == {"imported": 3, "skipped": 2, "errors": 1, "unmatched": 2}
