"""Fuzzy matching of free-text college names to reference colleges."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from models import College

LOGGER = logging.getLogger(__name__)

STOPWORDS: frozenset[str] = frozenset({"university", "college", "the", "and", "of"})
MIN_TOKEN_LENGTH = 4
MIN_SHARED_TOKENS = 2

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class MatchResult:
    matches: dict[str, int] = field(default_factory=dict)
    unmatched: list[str] = field(default_factory=list)


def _normalize(name: str | None) -> str:
    return " ".join(name.lower().split()) if isinstance(name, str) else ""


def significant_tokens(name: str) -> set[str]:
    """Lower-cased words of at least four characters that are not stopwords."""
    return {
        token
        for token in _TOKEN_SPLIT_RE.split(_normalize(name))
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    }


def _exact(candidate: str, college: College) -> bool:
    return candidate in (_normalize(college.name), _normalize(college.short_name))


def _contains(candidate: str, college: College) -> bool:
    name = _normalize(college.name)
    return bool(name) and (name in candidate or candidate in name)


def _token_overlap(candidate: str, college: College) -> bool:
    wanted = significant_tokens(candidate)
    if not wanted:
        return False
    shared = len(wanted & significant_tokens(college.name))
    return shared >= MIN_SHARED_TOKENS or (len(wanted) == 1 and shared == 1)


# Tried in order across all reference colleges; the first strategy with a hit wins.
STRATEGIES = (("exact", _exact), ("contains", _contains), ("token_overlap", _token_overlap))


def match_name(name: str, colleges: list[College]) -> tuple[College, str] | None:
    """Return the matched college and the strategy that found it, or None."""
    candidate = _normalize(name)
    if not candidate:
        return None
    for strategy, predicate in STRATEGIES:
        for college in colleges:
            if predicate(candidate, college):
                return college, strategy
    return None


def match_colleges(candidate_names: Iterable[str], reference_colleges: Iterable[College]) -> MatchResult:
    """Map each unique raw name to a reference college id; misses are reported, not raised."""
    colleges = list(reference_colleges)
    result = MatchResult()

    for name in dict.fromkeys(candidate_names):
        found = match_name(name, colleges)
        if found is None:
            result.unmatched.append(name)
            continue
        college, strategy = found
        result.matches[name] = college.id
        LOGGER.debug(
            "Matched %r to %r via %s",
            name,
            college.name,
            strategy,
            extra={"fields": {"parsed_name": name, "college_id": college.id, "strategy": strategy}},
        )

    LOGGER.info(
        "College matching complete: matched=%s unmatched=%s",
        len(result.matches),
        len(result.unmatched),
        extra={
            "fields": {
                "total_parsed": len(result.matches) + len(result.unmatched),
                "matched": len(result.matches),
                "unmatched": len(result.unmatched),
                "unmatched_sample": result.unmatched[:10],
            }
        },
    )
    return result
