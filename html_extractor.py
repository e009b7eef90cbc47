"""Keyword/date heuristics over individual college admissions pages."""

from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup

from date_parser import cycle_start_year, find_nearby_date
from http_fetch import fetch
from models import RoundDates, RoundType

LOGGER = logging.getLogger(__name__)

# Characters of context taken before/after a keyword hit when looking for its date.
WINDOW_BEFORE = 100
WINDOW_AFTER = 200

# Ordered per round; the first keyword whose window yields a date wins.
# Phrases are matched against lower-cased, whitespace-collapsed page text.
ROUND_KEYWORDS: dict[RoundType, tuple[str, ...]] = {
    RoundType.ED: ("early decision", "ed deadline", "ed i ", "ed1"),
    RoundType.ED2: ("early decision ii", "early decision 2", "ed ii", "ed2", "ed 2"),
    RoundType.EA: ("early action", "ea deadline"),
    RoundType.REA: ("restrictive early action", "single-choice early action", " rea "),
    RoundType.RD: ("regular decision", "rd deadline", "regular deadline"),
    RoundType.ROLLING: ("rolling admission", "rolling deadline"),
}

_WHITESPACE_RE = re.compile(r"\s+")


def page_text(html: str) -> str:
    """Return the lower-cased visible body text of an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    root = soup.body or soup
    text = root.get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def extract_round_dates(text: str, cycle_start_year: int) -> dict[RoundType, RoundDates]:
    """Scan page text for round keywords and pick the first parseable nearby date per round.

    Rounds with no keyword hit, or no date near any hit, are simply absent.
    """
    results: dict[RoundType, RoundDates] = {}

    for round_type, keywords in ROUND_KEYWORDS.items():
        for keyword in keywords:
            index = text.find(keyword)
            if index < 0:
                continue
            window = text[max(0, index - WINDOW_BEFORE) : index + WINDOW_AFTER]
            deadline = find_nearby_date(window, cycle_start_year)
            if deadline:
                results[round_type] = RoundDates(deadline_date=deadline)
                LOGGER.debug(
                    "Keyword %r matched %s -> %s",
                    keyword,
                    round_type.value,
                    deadline,
                    extra={"fields": {"round_type": round_type.value, "keyword": keyword, "deadline_date": deadline}},
                )
                break

    return results


def extract_deadlines(url: str, cycle: str, college_label: str) -> dict[RoundType, RoundDates]:
    """Fetch an admissions page and extract per-round deadlines.

    Raises FetchError when the page cannot be retrieved; an empty dict means
    the page was fetched but nothing recognizable was found.
    """
    start_year = cycle_start_year(cycle)
    LOGGER.info(
        "Parsing admissions page for %s",
        college_label,
        extra={"fields": {"college": college_label, "url": url, "cycle": cycle}},
    )

    response = fetch(url)
    results = extract_round_dates(page_text(response.text), start_year)

    LOGGER.info(
        "Page parsing complete for %s: %s rounds",
        college_label,
        len(results),
        extra={
            "fields": {
                "college": college_label,
                "rounds_found": len(results),
                "rounds": [r.value for r in results],
            }
        },
    )
    return results
