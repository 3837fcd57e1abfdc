"""
Engine configuration for the GrantMatch worker.

All tunables (batch sizes, pacing, thresholds, scoring weights, the shared
worker credential) live in one explicit ``EngineConfig`` object that is built
once at start-up and handed to every component that needs it.  Nothing in the
engine reads the environment on its own.

Environment Variables:
- WORKER_API_KEY: shared-secret bearer credential for batch endpoints
- GRANTMATCH_EMBEDDING_BATCH_SIZE: programs loaded per embedding request (default: 50)
- GRANTMATCH_EMBEDDING_CHUNK_SIZE: programs per paced chunk (default: 10)
- GRANTMATCH_MATCHING_BATCH_SIZE: companies per paced chunk (default: 10)
- GRANTMATCH_MATCHING_MAX_COMPANIES: companies per refresh run (default: 50)
- GRANTMATCH_BATCH_PAUSE_SECONDS: delay between chunks (default: 1.0)
- GRANTMATCH_MAX_CONCURRENT_JOBS: background jobs allowed at once (default: 1)
- GRANTMATCH_AUTO_MERGE_THRESHOLD: confidence for ``auto`` groups (default: 0.85)
- GRANTMATCH_CONFIDENCE_FLOOR: minimum confidence to form a group (default: 0.70)
- GRANTMATCH_ORG_SIMILARITY_THRESHOLD: fuzzy organization split (default: 0.85)

Usage:
    from grantmatch.config import EngineConfig

    config = EngineConfig.from_env()
    orchestrator = BatchOrchestrator(
        batch_size=config.matching_batch_size,
        pause_seconds=config.batch_pause_seconds,
    )
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class GroupingConfig:
    """Weights and thresholds used by the similarity grouper."""

    name_weight: float = 0.6
    organization_weight: float = 0.3
    agreement_weight: float = 0.1
    auto_merge_threshold: float = 0.85
    confidence_floor: float = 0.70
    organization_threshold: float = 0.85


@dataclass
class ScoringConfig:
    """Weights and bands used by the match scorer."""

    category_weight: float = 0.25
    region_weight: float = 0.10
    amount_weight: float = 0.15
    semantic_weight: float = 0.30
    industry_weight: float = 0.10
    eligibility_weight: float = 0.10
    # Observed cosine band for profile/program pairs; mapped onto 50-100.
    semantic_floor: float = 0.20
    semantic_ceiling: float = 0.50
    high_confidence_coverage: float = 0.9
    medium_confidence_coverage: float = 0.6
    max_results_stored: int = 50
    max_candidates: int = 500


@dataclass
class EngineConfig:
    worker_api_key: Optional[str] = None
    embedding_batch_size: int = 50
    embedding_chunk_size: int = 10
    matching_batch_size: int = 10
    matching_max_companies: int = 50
    batch_pause_seconds: float = 1.0
    max_concurrent_jobs: int = 1
    embedding_source_type: str = "support_project"
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    sql_echo: bool = False

    @classmethod
    def from_env(cls) -> "EngineConfig":
        grouping = GroupingConfig(
            auto_merge_threshold=_get_float_env(
                "GRANTMATCH_AUTO_MERGE_THRESHOLD", GroupingConfig.auto_merge_threshold
            ),
            confidence_floor=_get_float_env(
                "GRANTMATCH_CONFIDENCE_FLOOR", GroupingConfig.confidence_floor
            ),
            organization_threshold=_get_float_env(
                "GRANTMATCH_ORG_SIMILARITY_THRESHOLD",
                GroupingConfig.organization_threshold,
            ),
        )
        return cls(
            worker_api_key=os.getenv("WORKER_API_KEY") or None,
            embedding_batch_size=_get_int_env("GRANTMATCH_EMBEDDING_BATCH_SIZE", 50),
            embedding_chunk_size=_get_int_env("GRANTMATCH_EMBEDDING_CHUNK_SIZE", 10),
            matching_batch_size=_get_int_env("GRANTMATCH_MATCHING_BATCH_SIZE", 10),
            matching_max_companies=_get_int_env("GRANTMATCH_MATCHING_MAX_COMPANIES", 50),
            batch_pause_seconds=_get_float_env("GRANTMATCH_BATCH_PAUSE_SECONDS", 1.0),
            max_concurrent_jobs=_get_int_env("GRANTMATCH_MAX_CONCURRENT_JOBS", 1),
            grouping=grouping,
            sql_echo=_truthy(os.getenv("SQLALCHEMY_ECHO", "false")),
        )
