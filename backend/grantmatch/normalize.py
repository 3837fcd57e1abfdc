"""
Grant program name normalization for duplicate detection.

Announcements for the same program arrive from several portals with
cosmetic differences: a year prefix ("2024년"), a round marker ("제2차"),
bracketed source tags ("[중기부]"), trailing "공고"/"모집" and so on.  This
module strips that noise so two listings of one program share the same
``normalized_name`` / ``project_year`` key.

It also carries the small similarity helpers the grouper combines into a
merge confidence:

- ``name_similarity``      1.0 for identical keys, else 2-gram Jaccard
- ``deadline_similarity``  1.0 within 7 days, linear to 0.0 at 30 days
- ``amount_similarity``    1.0 at a min/max ratio >= 0.8, linear to 0.0 at 0.5

Both proximity helpers return 0.5 when either side is unknown.

Usage:
    from grantmatch.normalize import normalize_project

    normalized = normalize_project("[중기부] 2024년 제2차 청년창업지원사업 공고")
    normalized.normalized_name  # "청년창업지원사업"
    normalized.project_year     # 2024
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

UNKNOWN_SIMILARITY = 0.5

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_YEAR_PATTERNS = [
    re.compile(r"20[2-3][0-9]년도?"),
    re.compile(r"\(20[2-3][0-9]\)"),
    re.compile(r"\[20[2-3][0-9]\]"),
    re.compile(r"'[2-3][0-9]년"),
    re.compile(r"(?<!\d)20[2-3][0-9](?!\d)"),
]
_FULL_YEAR = re.compile(r"20[2-3][0-9]")
_SHORT_YEAR = re.compile(r"'([2-3][0-9])")

_ROUND_PATTERNS = [
    re.compile(r"제?\d+차\s*"),
    re.compile(r"\d+회차?\s*"),
    re.compile(r"\d+기\s*"),
]
_BRACKETED = [
    re.compile(r"\([^)]*\)"),
    re.compile(r"\[[^\]]*\]"),
]
_SPECIAL_BRACKETS = re.compile(r"[『』「」【】<>《》]")
_PUNCTUATION = re.compile(r"[~!@#$%^&*()_+=\-\[\]{};':\"\\|,.<>/?]")
_WHITESPACE = re.compile(r"\s+")

# (pattern, replacement) applied in order once whitespace is collapsed
_SUFFIX_RULES = [
    (re.compile(r"지원\s*사업$"), "지원사업"),
    (re.compile(r"^사업\s*"), ""),
    (re.compile(r"\s*공고$"), ""),
    (re.compile(r"\s*모집$"), ""),
    (re.compile(r"\s*안내$"), ""),
]


class NormalizationError(ValueError):
    """Raised when a program name cannot produce a grouping key."""


@dataclass
class NormalizedProject:
    original_name: str
    normalized_name: str
    project_year: Optional[int]
    ngrams: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Name handling
# ---------------------------------------------------------------------------
def extract_year(name: str) -> Optional[int]:
    """Return the most recent year (2020-2039) mentioned in *name*, if any."""
    years: List[int] = []
    for pattern in _YEAR_PATTERNS:
        for match in pattern.finditer(name):
            token = match.group(0)
            if full := _FULL_YEAR.search(token):
                years.append(int(full.group(0)))
            if short := _SHORT_YEAR.search(token):
                years.append(2000 + int(short.group(1)))
    return max(years) if years else None


def normalize_name(name: str) -> str:
    normalized = name
    for pattern in _YEAR_PATTERNS:
        normalized = pattern.sub("", normalized)
    for pattern in _ROUND_PATTERNS:
        normalized = pattern.sub("", normalized)
    for pattern in _BRACKETED:
        normalized = pattern.sub("", normalized)
    normalized = _SPECIAL_BRACKETS.sub("", normalized)
    normalized = _PUNCTUATION.sub(" ", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    for pattern, replacement in _SUFFIX_RULES:
        normalized = pattern.sub(replacement, normalized)
    return normalized.casefold().strip()


def generate_ngrams(text: str, n: int = 2) -> List[str]:
    """Character n-grams of *text* with whitespace removed."""
    clean = _WHITESPACE.sub("", text)
    if len(clean) < n:
        return [clean]
    return [clean[i : i + n] for i in range(len(clean) - n + 1)]


def jaccard_similarity(first: List[str], second: List[str]) -> float:
    a, b = set(first), set(second)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def normalize_project(name: Optional[str]) -> NormalizedProject:
    """Build the grouping key for a program name.

    Raises:
        NormalizationError: if the name is missing or nothing is left after
            stripping noise.
    """
    if name is None or not name.strip():
        raise NormalizationError("program has no name")

    normalized_name = normalize_name(name)
    if not normalized_name:
        raise NormalizationError(f"name normalizes to nothing: {name!r}")

    return NormalizedProject(
        original_name=name,
        normalized_name=normalized_name,
        project_year=extract_year(name),
        ngrams=generate_ngrams(normalized_name),
    )


def name_similarity(first: str, second: str) -> float:
    """Similarity of two *normalized* names."""
    if first == second:
        return 1.0
    return jaccard_similarity(generate_ngrams(first), generate_ngrams(second))


# ---------------------------------------------------------------------------
# Proximity helpers
# ---------------------------------------------------------------------------
def deadline_similarity(
    first: Optional[datetime], second: Optional[datetime]
) -> float:
    if first is None or second is None:
        return UNKNOWN_SIMILARITY
    diff_days = abs((first - second).total_seconds()) / 86400
    if diff_days <= 7:
        return 1.0
    if diff_days <= 30:
        return 1.0 - (diff_days - 7) / 23
    return 0.0


def amount_similarity(first: Optional[int], second: Optional[int]) -> float:
    # Zero means "not announced" in scraped listings.
    if not first or not second:
        return UNKNOWN_SIMILARITY
    high = max(first, second)
    low = min(first, second)
    if high <= 0:
        return 1.0
    ratio = low / high
    if ratio >= 0.8:
        return 1.0
    if ratio >= 0.5:
        return (ratio - 0.5) / 0.3
    return 0.0
