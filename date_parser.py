"""Admission-cycle inference and date fragment parsing."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Callable

LOGGER = logging.getLogger(__name__)

# Deadlines from September onward belong to the cycle that starts that year.
CYCLE_START_MONTH = 9

MONTHS: dict[str, int] = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "sept": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

# Longest names first so "september" wins over "sep".
_MONTH_ALT = "|".join(sorted(MONTHS, key=len, reverse=True))

MONTH_DAY_YEAR_RE = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.IGNORECASE
)
MONTH_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b", re.IGNORECASE)
SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")

_CYCLE_RE = re.compile(r"(\d{4})-(\d{4})")


def current_cycle(today: date | None = None) -> str:
    """Return the admission cycle token ("2025-2026") that contains today."""
    today = today or date.today()
    start = today.year if today.month >= CYCLE_START_MONTH else today.year - 1
    return format_cycle(start)


def format_cycle(start_year: int) -> str:
    return f"{start_year}-{start_year + 1}"


def cycle_start_year(cycle: str) -> int:
    """Return the first year of a cycle token, raising ValueError when malformed."""
    match = _CYCLE_RE.fullmatch(cycle.strip()) if isinstance(cycle, str) else None
    if not match or int(match.group(2)) != int(match.group(1)) + 1:
        raise ValueError(f"Invalid admission cycle: {cycle!r}")
    return int(match.group(1))


def infer_year(month: int, cycle_start_year: int) -> int:
    """Year for a month with no explicit year: Sep-Dec is the start year, Jan-Aug the next."""
    return cycle_start_year if month >= CYCLE_START_MONTH else cycle_start_year + 1


def _iso(year: int, month: int, day: int) -> str | None:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _from_month_day_year(match: re.Match[str], _cycle_start_year: int) -> str | None:
    month = MONTHS[match.group(1).lower()]
    return _iso(int(match.group(3)), month, int(match.group(2)))


def _from_month_day(match: re.Match[str], cycle_start_year: int) -> str | None:
    month = MONTHS[match.group(1).lower()]
    return _iso(infer_year(month, cycle_start_year), month, int(match.group(2)))


def _from_slash(match: re.Match[str], _cycle_start_year: int) -> str | None:
    return _iso(int(match.group(3)), int(match.group(1)), int(match.group(2)))


def _from_iso(match: re.Match[str], _cycle_start_year: int) -> str | None:
    return _iso(int(match.group(1)), int(match.group(2)), int(match.group(3)))


# Priority order shared by parse_date and find_nearby_date.
DATE_PATTERNS: tuple[tuple[re.Pattern[str], Callable[[re.Match[str], int], str | None]], ...] = (
    (MONTH_DAY_YEAR_RE, _from_month_day_year),
    (MONTH_DAY_RE, _from_month_day),
    (SLASH_DATE_RE, _from_slash),
    (ISO_DATE_RE, _from_iso),
)


def parse_date(text: str | None, cycle_start_year: int) -> str | None:
    """Parse a date fragment into ISO YYYY-MM-DD, or None when nothing valid is found.

    Patterns are tried in priority order (month-name with year, month-name
    without year, MM/DD/YYYY, YYYY-MM-DD); the first one yielding a real
    calendar date wins. Never raises for unparseable input.
    """
    if not isinstance(text, str) or not text.strip():
        return None

    for pattern, build in DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        parsed = build(match, cycle_start_year)
        if parsed:
            LOGGER.debug("Parsed date %r -> %s", match.group(0), parsed)
            return parsed

    LOGGER.debug("No parseable date in %r", text[:80])
    return None


def find_nearby_date(window: str, cycle_start_year: int) -> str | None:
    """Return the first parseable date in a text window, trying patterns by priority."""
    for pattern, build in DATE_PATTERNS:
        for match in pattern.finditer(window):
            parsed = build(match, cycle_start_year)
            if parsed:
                return parsed
    return None
