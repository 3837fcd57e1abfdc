"""
Match scorer: fit of every open grant program for one company.

Hard filters exclude a program outright:

- category      program category or sub-category is one of the preferred ones
- amount        program funding range overlaps the preferred range
- region        program region is preferred, nationwide, or unstated
- keywords      no exclusion keyword appears in the name or summary

Surviving programs get up to six component scores (0-100):

===========  =======  ==================================================
component    weight   signal
===========  =======  ==================================================
category     0.25     100 on an exact category match
region       0.10     100 on an exact region, 80 for nationwide programs
amount       0.15     distance of the program midpoint from the range
semantic     0.30     company profile vs program embedding cosine
industry     0.10     company business lines found in the program target
eligibility  0.10     company type and certifications the target asks for
===========  =======  ==================================================

Components without a signal (no preference, no embedding, no stated target)
drop out and the remaining weights are re-normalised.  ``confidence``
reflects the share of weight that was available.

Usage:
    scorer = MatchScorer(repos, store, config.scoring)
    matches = await scorer.score(company_id, user_id, preferences)
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from grantmatch.config import ScoringConfig
from grantmatch.embedding_store import EmbeddingError, EmbeddingStore
from grantmatch.models.db.company import Company, CompanyMatchPreference
from grantmatch.models.db.grant_program import GrantProgram
from grantmatch.region import is_nationwide, match_region
from grantmatch.repositories.base import Repositories

logger = logging.getLogger(__name__)

PROGRAM_SOURCE_TYPE = "support_project"
COMPANY_SOURCE_TYPE = "company"

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"


class PreferenceError(ValueError):
    """Stored or submitted preferences are unusable."""


class MalformedAmountError(ValueError):
    """A program's funding amount cannot be interpreted."""


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
def _clean_list(values: Optional[List[str]]) -> List[str]:
    return [v.strip() for v in values or [] if v and v.strip()]


@dataclass
class MatchPreferences:
    categories: List[str] = field(default_factory=list)
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    regions: List[str] = field(default_factory=list)
    exclude_keywords: List[str] = field(default_factory=list)

    def validate(self) -> "MatchPreferences":
        for label, value in (("min_amount", self.min_amount), ("max_amount", self.max_amount)):
            if value is not None and value < 0:
                raise PreferenceError(f"{label} must not be negative (got {value})")
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise PreferenceError(
                f"min_amount {self.min_amount} exceeds max_amount {self.max_amount}"
            )
        return self

    @classmethod
    def from_record(cls, record: CompanyMatchPreference) -> "MatchPreferences":
        """Build validated preferences from a stored row.

        Raises:
            PreferenceError: the stored bounds are corrupt.
        """
        try:
            min_amount = int(record.min_amount) if record.min_amount is not None else None
            max_amount = int(record.max_amount) if record.max_amount is not None else None
        except (TypeError, ValueError) as e:
            raise PreferenceError(f"amount bounds are not numeric: {e}") from e
        return cls(
            categories=_clean_list(record.categories),
            min_amount=min_amount,
            max_amount=max_amount,
            regions=_clean_list(record.regions),
            exclude_keywords=_clean_list(record.exclude_keywords),
        ).validate()


@dataclass
class ScoredMatch:
    project_id: uuid.UUID
    total_score: int
    confidence: str
    match_reasons: List[str]
    category_score: Optional[int] = None
    region_score: Optional[int] = None
    amount_score: Optional[int] = None
    semantic_score: Optional[int] = None
    industry_score: Optional[int] = None
    eligibility_score: Optional[int] = None


# Business line -> words a program target uses for that line.
INDUSTRY_KEYWORDS: Dict[str, List[str]] = {
    "소프트웨어": ["sw", "소프트웨어", "it", "정보통신", "디지털", "스마트", "ai", "데이터", "ax"],
    "it서비스": ["it", "정보통신", "sw", "소프트웨어", "디지털", "플랫폼"],
    "정보통신": ["it", "정보통신", "sw", "소프트웨어", "ict"],
    "플랫폼": ["플랫폼", "it", "디지털", "sw"],
    "ai": ["ai", "인공지능", "데이터", "it", "sw", "ax", "디지털"],
    "제조": ["제조", "생산", "부품", "산업", "공장", "스마트공장"],
    "생산": ["제조", "생산", "공정"],
    "기계": ["기계", "제조", "장비", "설비"],
    "전자": ["전자", "반도체", "부품", "it"],
    "바이오": ["바이오", "의료", "헬스케어", "생명", "그린바이오"],
    "의료": ["의료", "바이오", "헬스케어", "건강"],
    "헬스케어": ["헬스케어", "의료", "바이오", "건강"],
    "디자인": ["디자인", "콘텐츠", "창작", "문화"],
    "콘텐츠": ["콘텐츠", "디자인", "문화", "미디어"],
    "서비스": ["서비스", "플랫폼"],
    "자동화": ["자동화", "ai", "ax", "디지털", "스마트"],
}

# Targets open to every industry.
GENERIC_TARGETS = {"중소기업", "창업기업", "중소·중견기업", "예비창업자"}
ANY_INDUSTRY_MARKERS = ("전업종", "업종무관", "업종 무관")

# (marker in the target, company flag, points, reason)
CERTIFICATIONS = (
    ("벤처", "is_venture", 15, "venture certified"),
    ("이노비즈", "is_innobiz", 10, "InnoBiz certified"),
    ("메인비즈", "is_mainbiz", 10, "MainBiz certified"),
)

_WORD_SPLIT = re.compile(r"[\s,/]+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def company_profile_text(company: Company) -> str:
    """Text describing what the company does, for the semantic signal."""
    parts = [
        company.name,
        company.business_category,
        company.main_business,
        ", ".join(company.business_items or []),
        company.introduction,
        company.vision,
        company.mission,
    ]
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def program_amount_range(program: GrantProgram) -> Optional[Tuple[int, int]]:
    """``(low, high)`` funding range, ``None`` when the program states no amount.

    Raises:
        MalformedAmountError: negative, non-numeric or inverted amounts.
    """
    try:
        low = int(program.amount_min) if program.amount_min is not None else None
        high = int(program.amount_max) if program.amount_max is not None else None
    except (TypeError, ValueError) as e:
        raise MalformedAmountError(f"amount is not numeric: {e}") from e

    if low is None and high is None:
        return None
    if (low is not None and low < 0) or (high is not None and high < 0):
        raise MalformedAmountError(f"negative amount ({low}, {high})")
    if low is None:
        low = high
    if high is None:
        high = low
    if low > high:
        raise MalformedAmountError(f"amount_min {low} exceeds amount_max {high}")
    return low, high


def scale_semantic(cosine: float, floor: float, ceiling: float) -> int:
    """Map the realistic cosine band onto 50-100; non-positive cosine scores 0."""
    if cosine <= 0:
        return 0
    clamped = min(max(cosine, floor), ceiling)
    if ceiling <= floor:
        return 100 if cosine >= ceiling else 50
    return int(round(50 + (clamped - floor) / (ceiling - floor) * 50))


def amount_fit(
    program_range: Tuple[int, int], min_amount: Optional[int], max_amount: Optional[int]
) -> int:
    low, high = program_range
    midpoint = (low + high) / 2
    lower = float(min_amount or 0)
    upper = float(max_amount) if max_amount is not None else math.inf
    if lower <= midpoint <= upper:
        return 100

    distance = lower - midpoint if midpoint < lower else midpoint - upper
    width = (upper - lower) if upper != math.inf else lower
    if width <= 0:
        width = max(lower, upper if upper != math.inf else 0, 1.0)
    return int(round(max(0.0, 100 * (1 - distance / width))))


def program_criteria(program: GrantProgram) -> str:
    """Stated target and eligibility text, case-folded; empty when neither is set."""
    parts = [program.target, program.eligibility]
    return " ".join(p.strip() for p in parts if p and p.strip()).casefold()


def industry_fit(company: Optional[Company], program: GrantProgram) -> Optional[int]:
    """How well the company's business lines fit who the program is for.

    80 when a business line is named outright, 70 / 50 for two / one related
    keywords, 60 when part of a business line appears.  Targets open to any
    industry score at least 50, and also search the program name.

    Returns ``None`` when the company states no business line or the program
    states no target or eligibility.
    """
    criteria = program_criteria(program)
    if company is None or not criteria:
        return None
    lines = [company.business_category, company.main_business, *(company.business_items or [])]
    lines = [line.strip().casefold() for line in lines if line and line.strip()]
    if not lines:
        return None

    generic = criteria in GENERIC_TARGETS or any(m in criteria for m in ANY_INDUSTRY_MARKERS)
    haystack = f"{criteria} {(program.name or '').casefold()}" if generic else criteria

    best = 0
    for line in lines:
        if line in haystack:
            best = max(best, 80)
            continue
        for industry, keywords in INDUSTRY_KEYWORDS.items():
            if industry not in line:
                continue
            hits = sum(1 for keyword in keywords if keyword in haystack)
            if hits >= 2:
                best = max(best, 70)
            elif hits == 1:
                best = max(best, 50)
        if any(len(part) >= 2 and part in haystack for part in _WORD_SPLIT.split(line)):
            best = max(best, 60)

    if generic and best == 0:
        best = 50
    return min(best, 100)


def eligibility_fit(
    company: Optional[Company], program: GrantProgram
) -> Optional[Tuple[int, List[str]]]:
    """Company type and certifications against the program's stated target.

    Starts at 50; an SME company on an SME program adds 20, and each
    certification the target asks for and the company holds adds its points.
    """
    criteria = program_criteria(program)
    if company is None or not criteria:
        return None
    score = 50
    reasons: List[str] = []

    target = (program.target or "").casefold()
    if ("중소기업" in target or "sme" in target) and "중소" in (company.company_type or ""):
        score += 20
        reasons.append("SME program")

    for marker, flag, points, reason in CERTIFICATIONS:
        if marker in criteria and getattr(company, flag, False):
            score += points
            reasons.append(reason)
    return min(score, 100), reasons


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------
class MatchScorer:
    def __init__(
        self,
        repos: Repositories,
        store: EmbeddingStore,
        config: Optional[ScoringConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._programs = repos.programs
        self._companies = repos.companies
        self._store = store
        self.config = config or ScoringConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -- filters ------------------------------------------------------------

    def passes_filters(
        self,
        program: GrantProgram,
        prefs: MatchPreferences,
        amount_range: Optional[Tuple[int, int]],
    ) -> bool:
        if prefs.categories:
            wanted = set(prefs.categories)
            if program.category not in wanted and program.sub_category not in wanted:
                return False

        if amount_range is not None:
            low, high = amount_range
            if prefs.max_amount is not None and low > prefs.max_amount:
                return False
            if prefs.min_amount is not None and high < prefs.min_amount:
                return False

        if prefs.regions and program.region and program.region.strip():
            if not is_nationwide(program.region) and match_region(prefs.regions, program.region) is None:
                return False

        if prefs.exclude_keywords:
            haystack = f"{program.name or ''} {program.summary or ''}".casefold()
            if any(keyword.casefold() in haystack for keyword in prefs.exclude_keywords):
                return False
        return True

    # -- scoring ------------------------------------------------------------

    def score_program(
        self,
        program: GrantProgram,
        prefs: MatchPreferences,
        amount_range: Optional[Tuple[int, int]],
        cosine: Optional[float],
        company: Optional[Company] = None,
    ) -> ScoredMatch:
        cfg = self.config
        reasons: List[str] = []
        components: Dict[str, Tuple[int, float]] = {}

        if prefs.categories:
            wanted = set(prefs.categories)
            matched = program.category if program.category in wanted else program.sub_category
            components["category"] = (100, cfg.category_weight)
            reasons.append(f"category match: {matched}")

        if prefs.regions and program.region and program.region.strip():
            if is_nationwide(program.region):
                components["region"] = (80, cfg.region_weight)
                reasons.append("nationwide program")
            else:
                code = match_region(prefs.regions, program.region)
                components["region"] = (100, cfg.region_weight)
                reasons.append(f"region match: {code}")

        if amount_range is not None and (
            prefs.min_amount is not None or prefs.max_amount is not None
        ):
            fit = amount_fit(amount_range, prefs.min_amount, prefs.max_amount)
            components["amount"] = (fit, cfg.amount_weight)
            if fit == 100:
                reasons.append("amount within range")
            elif fit >= 50:
                reasons.append("amount near range")

        if cosine is not None:
            semantic = scale_semantic(cosine, cfg.semantic_floor, cfg.semantic_ceiling)
            components["semantic"] = (semantic, cfg.semantic_weight)
            if semantic >= 70:
                reasons.append("high business similarity")

        industry = industry_fit(company, program)
        if industry is not None:
            components["industry"] = (industry, cfg.industry_weight)
            if industry >= 60:
                reasons.append("industry match")

        eligibility = eligibility_fit(company, program)
        if eligibility is not None:
            components["eligibility"] = (eligibility[0], cfg.eligibility_weight)
            reasons.extend(eligibility[1])

        available = sum(weight for _, weight in components.values())
        total_weight = (
            cfg.category_weight
            + cfg.region_weight
            + cfg.amount_weight
            + cfg.semantic_weight
            + cfg.industry_weight
            + cfg.eligibility_weight
        )
        if available > 0:
            total = sum(score * weight for score, weight in components.values()) / available
        else:
            total = 0.0
        coverage = available / total_weight if total_weight else 0.0

        if coverage >= cfg.high_confidence_coverage:
            confidence = CONFIDENCE_HIGH
        elif coverage >= cfg.medium_confidence_coverage:
            confidence = CONFIDENCE_MEDIUM
        else:
            confidence = CONFIDENCE_LOW

        def component(name: str) -> Optional[int]:
            return components[name][0] if name in components else None

        return ScoredMatch(
            project_id=program.id,
            total_score=int(min(100, max(0, round(total)))),
            confidence=confidence,
            match_reasons=reasons,
            category_score=component("category"),
            region_score=component("region"),
            amount_score=component("amount"),
            semantic_score=component("semantic"),
            industry_score=component("industry"),
            eligibility_score=component("eligibility"),
        )

    async def _profile_vector(self, company: Optional[Company]) -> Optional[List[float]]:
        if company is None:
            return None
        profile = company_profile_text(company)
        if not profile:
            return None
        try:
            return await self._store.upsert(
                COMPANY_SOURCE_TYPE,
                str(company.id),
                profile,
                {"name": company.name},
            )
        except EmbeddingError as e:
            logger.warning(f"Company {company.id}: profile embedding unavailable: {e}")
            return None

    async def score(
        self,
        company_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        preferences: MatchPreferences,
    ) -> List[ScoredMatch]:
        """Score every open program for the company, best first.

        ``user_id`` only identifies who the run is for in the logs; results
        carry it once persisted.
        """
        prefs = preferences.validate()
        candidates = await self._programs.list_match_candidates(
            self._clock(), self.config.max_candidates
        )

        eligible: List[Tuple[GrantProgram, Optional[Tuple[int, int]]]] = []
        for program in candidates:
            try:
                amount_range = program_amount_range(program)
            except MalformedAmountError as e:
                logger.warning(f"Company {company_id}: dropping program {program.id}: {e}")
                continue
            if self.passes_filters(program, prefs, amount_range):
                eligible.append((program, amount_range))

        similarities: Dict[str, float] = {}
        company: Optional[Company] = None
        if eligible:
            target = await self._companies.get_refresh_target(company_id)
            company = target.company if target else None
            vector = await self._profile_vector(company)
            if vector is not None:
                similarities = await self._store.similarity(
                    PROGRAM_SOURCE_TYPE, vector, [str(p.id) for p, _ in eligible]
                )

        matches = [
            self.score_program(
                program, prefs, amount_range, similarities.get(str(program.id)), company
            )
            for program, amount_range in eligible
        ]
        matches.sort(key=lambda m: (-m.total_score, str(m.project_id)))
        logger.info(
            f"Scored company {company_id} for user {user_id}: "
            f"{len(candidates)} candidates, {len(matches)} eligible"
        )
        return matches
