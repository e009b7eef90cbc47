"""Requirements-grid PDF download, text extraction and line-scan parsing.

The grid is a wide table: college name, a school-type marker (Coed / Women /
Men), then deadline columns. Text extraction flattens it into lines, and the
scanner below recovers (college name, round type, date) triples with layout
heuristics. Round types are inferred from date positions and months only, so
REA schools read as ED and unusual multi-date rows can be misclassified.
"""

from __future__ import annotations

import io
import logging
import os
import re
from collections import Counter
from datetime import date

import pdfplumber
from pypdf import PdfReader

from errors import PdfExtractionError
from http_fetch import fetch
from models import ParsedDeadlineCandidate, RoundType

REQUIREMENTS_GRID_URL = os.getenv(
    "REQUIREMENTS_GRID_URL", "https://content.commonapp.org/Files/ReqGrid.pdf"
)
PAGE_BREAK = "--- PAGE BREAK ---"
MIN_GRID_YEAR = 2024
MAX_GRID_YEAR = 2027

LOGGER = logging.getLogger(__name__)

# Headers, footers, column captions and checkbox-only rows.
NOISE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"^Page \d+$",
        r"First Year Deadlines",
        r"^Updated:",
        r"See bottom of document",
        r"Common App Member School",
        r"^Deadlines.*App Fees",
        r"^\d{4}-\d{2}$",
        r"^and Requirements$",
        r"^Rolling.*US.*INTL",
        r"^Personal.*Essay",
        r"^Writing.*Test Policy",
        r"^SAT/ACT",
        r"^Tests Used",
        rf"^{re.escape(PAGE_BREAK)}$",
        r"^\s*$",
        r"^Website\s*$",
        r"^Website\s+\d",
        r"^or P\s*Y",
        r"^[YN]\s+[YN]\s*$",
        r"^[YN]\s*$",
        r"^or ACT",
        r"^D or I or T",
        r"^C or D or I",
        r"^I or T",
        r"^See$",
        r"^Used INTL",
    )
)

ENTRY_MARKER_RE = re.compile(r"\s+(Coed|Women|Men)\s+", re.IGNORECASE)
ENTRY_SPLIT_RE = re.compile(r"^(.+?)\s+(Coed|Women|Men)\s+(.+)$", re.IGNORECASE)
GRID_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
ROLLING_RE = re.compile(r"Rolling", re.IGNORECASE)
YN_RUN_RE = re.compile(r"^[YN](\s+[YN])*\s*$")

# Applied in order to strip table leakage from the front and middle of names.
_NAME_CLEANUPS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^(Saves Forms|Website|Forms|Saves)\s*", re.IGNORECASE), ""),
    (re.compile(r"^[YN]\s+[YN]\s+"), ""),
    (re.compile(r"^[YN]\s+"), ""),
    (re.compile(r"^[YN][YN]\s+"), ""),
    (re.compile(r"\s+(Saves Forms|Website|Forms|Saves)\s+", re.IGNORECASE), " "),
    (re.compile(r"\s+[YN]\s+[YN]\s+", re.IGNORECASE), " "),
    (re.compile(r"^[^A-Za-z]+"), ""),
)
_INVALID_NAME_RE = re.compile(r"^([$\d]|(Y|N|S|F|A)\s*$)")


def download_pdf(url: str = REQUIREMENTS_GRID_URL) -> bytes:
    """Download the requirements grid, raising FetchError on failure."""
    LOGGER.info("Downloading PDF from %s", url, extra={"fields": {"url": url}})
    response = fetch(url)
    LOGGER.info(
        "PDF downloaded (%s bytes)", len(response.content), extra={"fields": {"size_bytes": len(response.content)}}
    )
    return response.content


def _pages_with_pdfplumber(pdf_bytes: bytes) -> list[str]:
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        return [page.extract_text() or "" for page in pdf.pages]


def _pages_with_pypdf(pdf_bytes: bytes) -> list[str]:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return [page.extract_text() or "" for page in reader.pages]


def extract_pdf_text(pdf_bytes: bytes) -> str:
    """Extract page text, layout-aware extractor first, plain extractor as fallback.

    Pages are joined with an explicit page-break line so that names never
    merge across pages. Raises PdfExtractionError when every strategy fails
    or yields no text.
    """
    strategies = (("pdfplumber", _pages_with_pdfplumber), ("pypdf", _pages_with_pypdf))
    failures: list[str] = []

    for method, extract in strategies:
        try:
            pages = extract(pdf_bytes)
        except Exception as exc:  # any parser failure falls through to the next strategy
            LOGGER.warning("%s extraction failed: %s", method, exc, extra={"fields": {"method": method}})
            failures.append(f"{method}: {exc}")
            continue

        if not any(page.strip() for page in pages):
            LOGGER.warning("%s extracted no text", method, extra={"fields": {"method": method}})
            failures.append(f"{method}: no text")
            continue

        text = f"\n\n{PAGE_BREAK}\n\n".join(pages)
        LOGGER.info(
            "PDF text extracted with %s: pages=%s chars=%s",
            method,
            len(pages),
            len(text),
            extra={"fields": {"method": method, "pages": len(pages), "text_length": len(text)}},
        )
        return text

    raise PdfExtractionError(f"PDF text extraction failed: {'; '.join(failures)}")


def is_noise_line(line: str) -> bool:
    """True for lines that can never carry college data."""
    trimmed = line.strip()
    if len(trimmed) < 4:
        return True
    return any(pattern.search(trimmed) for pattern in NOISE_PATTERNS)


def split_entry(line: str) -> tuple[str, str] | None:
    """Split a terminator line into (raw college name, date payload) at the school-type marker."""
    match = ENTRY_SPLIT_RE.match(line)
    if not match:
        return None
    return match.group(1), match.group(3)


def clean_college_name(raw: str) -> str | None:
    """Strip PDF table leakage from a college name; None if what remains is not a name."""
    name = re.sub(r"\s+", " ", raw).strip()
    for pattern, replacement in _NAME_CLEANUPS:
        name = pattern.sub(replacement, name)
    name = name.strip()

    if len(name) < 4 or _INVALID_NAME_RE.match(name):
        return None
    return name


def extract_grid_dates(payload: str) -> list[date]:
    """All MM/DD/YYYY dates in grid years, left to right; invalid calendar dates are dropped."""
    found: list[date] = []
    for match in GRID_DATE_RE.finditer(payload):
        month, day, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
        if not MIN_GRID_YEAR <= year <= MAX_GRID_YEAR:
            continue
        try:
            found.append(date(year, month, day))
        except ValueError:
            continue
    return found


def infer_round_type(month: int, day: int, position: int, has_rolling: bool) -> RoundType:
    """Best-effort round classification from a date's month and its position on the row."""
    first = position == 0
    if month in (10, 11):
        return RoundType.ED if first else RoundType.EA
    if month == 12:
        return RoundType.EA if first else RoundType.ED2
    if month == 1 and day <= 15:
        return RoundType.ED2 if first else RoundType.RD
    if month in (1, 2):
        return RoundType.RD
    if 3 <= month <= 8:
        return RoundType.ROLLING if has_rolling else RoundType.RD
    return RoundType.ROLLING


def rolling_placeholder(cycle_start_year: int) -> str:
    return date(cycle_start_year + 1, 8, 1).isoformat()


def _entry_candidates(name: str, payload: str, cycle_start_year: int) -> list[ParsedDeadlineCandidate]:
    dates = extract_grid_dates(payload)
    has_rolling = bool(ROLLING_RE.search(payload))

    candidates = [
        ParsedDeadlineCandidate(
            college_name=name,
            round_type=infer_round_type(d.month, d.day, position, has_rolling),
            deadline_date=d.isoformat(),
        )
        for position, d in enumerate(dates)
    ]
    if not dates and has_rolling:
        candidates.append(
            ParsedDeadlineCandidate(
                college_name=name,
                round_type=RoundType.ROLLING,
                deadline_date=rolling_placeholder(cycle_start_year),
            )
        )
    return candidates


def parse_grid_text(text: str, cycle_start_year: int) -> list[ParsedDeadlineCandidate]:
    """Line-scan extracted grid text into deduplicated deadline candidates."""
    LOGGER.info(
        "Scanning grid text (%s chars)",
        len(text),
        extra={"fields": {"text_length": len(text), "cycle_start_year": cycle_start_year}},
    )
    extracted: list[ParsedDeadlineCandidate] = []
    pending_name = ""

    for line in text.split("\n"):
        trimmed = line.strip()

        if is_noise_line(trimmed):
            pending_name = ""
            continue

        if ENTRY_MARKER_RE.search(trimmed):
            full_line = f"{pending_name} {trimmed}" if pending_name else trimmed
            pending_name = ""
            parts = split_entry(full_line)
            if not parts:
                continue
            name = clean_college_name(parts[0])
            if not name:
                continue
            extracted.extend(_entry_candidates(name, parts[1], cycle_start_year))
        elif GRID_DATE_RE.search(trimmed):
            # Dates without a marker: the name belonged to an earlier entry.
            pending_name = ""
        elif not YN_RUN_RE.match(trimmed) and trimmed[:1].isupper() and len(trimmed) >= 3:
            pending_name = f"{pending_name} {trimmed}" if pending_name else trimmed

    unique: dict[tuple[str, RoundType], ParsedDeadlineCandidate] = {}
    for candidate in extracted:
        unique.setdefault((candidate.college_name, candidate.round_type), candidate)
    result = list(unique.values())

    by_round = Counter(c.round_type.value for c in result)
    LOGGER.info(
        "Grid parsing complete: extracted=%s unique=%s colleges=%s",
        len(extracted),
        len(result),
        len({c.college_name for c in result}),
        extra={
            "fields": {
                "total_extracted": len(extracted),
                "unique_deadlines": len(result),
                "unique_colleges": len({c.college_name for c in result}),
                "by_round_type": {r.value: by_round.get(r.value, 0) for r in RoundType},
            }
        },
    )
    return result


def parse_pdf(pdf_bytes: bytes, cycle_start_year: int) -> list[ParsedDeadlineCandidate]:
    """Extract text from grid PDF bytes and scan it into candidates."""
    return parse_grid_text(extract_pdf_text(pdf_bytes), cycle_start_year)
