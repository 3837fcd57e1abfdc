"""
Korean region utilities shared by the grouper and the match scorer.

Programs and companies spell regions many ways ("서울특별시", "서울시",
"서울").  Everything is reduced to one of ``REGION_CODES`` before comparing.
A program whose region mentions "전국" or "전 지역" is nationwide and is
compatible with every region.
"""

from typing import Iterable, Optional

REGION_CODES = (
    "서울",
    "부산",
    "대구",
    "인천",
    "광주",
    "대전",
    "울산",
    "세종",
    "경기",
    "강원",
    "충북",
    "충남",
    "전북",
    "전남",
    "경북",
    "경남",
    "제주",
)

NATIONWIDE = "전국"
_NATIONWIDE_MARKERS = ("전국", "전 지역")

_REGION_PATTERNS = {
    "서울": ("서울특별시", "서울시", "서울"),
    "부산": ("부산광역시", "부산시", "부산"),
    "대구": ("대구광역시", "대구시", "대구"),
    "인천": ("인천광역시", "인천시", "인천"),
    "광주": ("광주광역시", "광주시", "광주"),
    "대전": ("대전광역시", "대전시", "대전"),
    "울산": ("울산광역시", "울산시", "울산"),
    "세종": ("세종특별자치시", "세종시", "세종"),
    "경기": ("경기도", "경기"),
    "강원": ("강원특별자치도", "강원도", "강원"),
    "충북": ("충청북도", "충북"),
    "충남": ("충청남도", "충남"),
    "전북": ("전북특별자치도", "전라북도", "전북"),
    "전남": ("전라남도", "전남"),
    "경북": ("경상북도", "경북"),
    "경남": ("경상남도", "경남"),
    "제주": ("제주특별자치도", "제주도", "제주"),
}

# Longest spelling first so "경상북도" wins over a shorter overlap.
_SPELLINGS = sorted(
    ((spelling, code) for code, spellings in _REGION_PATTERNS.items() for spelling in spellings),
    key=lambda item: len(item[0]),
    reverse=True,
)


def extract_region(text: Optional[str]) -> Optional[str]:
    """Return the region code mentioned earliest in *text*.

    >>> extract_region("대구광역시 북구 오봉로 164")
    '대구'
    >>> extract_region("경기도 광주시")
    '경기'
    """
    if not text or len(text.strip()) < 2:
        return None

    best: Optional[tuple[int, str]] = None
    for spelling, code in _SPELLINGS:
        position = text.find(spelling)
        if position >= 0 and (best is None or position < best[0]):
            best = (position, code)
    return best[1] if best else None


def normalize_region(region: str) -> str:
    return extract_region(region) or region.strip()


def is_nationwide(region: Optional[str]) -> bool:
    if not region:
        return False
    return any(marker in region for marker in _NATIONWIDE_MARKERS)


def regions_compatible(first: Optional[str], second: Optional[str]) -> bool:
    """True when two program regions could describe the same announcement.

    Blank or nationwide regions are compatible with anything.
    """
    if not first or not second or not first.strip() or not second.strip():
        return True
    if is_nationwide(first) or is_nationwide(second):
        return True
    return normalize_region(first) == normalize_region(second)


def match_region(preferred: Iterable[str], program_region: Optional[str]) -> Optional[str]:
    """Return the preferred region code *program_region* satisfies, if any."""
    if not program_region:
        return None
    code = normalize_region(program_region)
    for region in preferred:
        if normalize_region(region) == code:
            return code
    return None
