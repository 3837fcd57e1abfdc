"""
Matching refresh: re-score companies and append fresh result rows.

A refresh never updates old rows.  Each run inserts the best
``max_results_stored`` matches with one timestamp, and readers show the
newest set.  Companies without a preference or a member are skipped;
corrupt stored preferences count as that company's error.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from grantmatch.batch import BatchOrchestrator, BatchReport, ItemSkipped
from grantmatch.config import EngineConfig
from grantmatch.embedding_store import Embedder, EmbeddingStore
from grantmatch.matching import MatchPreferences, MatchScorer
from grantmatch.models.db.matching_result import MatchingResult
from grantmatch.repositories.base import (
    CompanyRefreshTarget,
    Repositories,
    RepositoryScope,
)

logger = logging.getLogger(__name__)


class MatchingRefreshService:
    def __init__(
        self,
        scope: RepositoryScope,
        embedder: Embedder,
        config: EngineConfig,
        orchestrator: Optional[BatchOrchestrator] = None,
        clock: Optional[Callable] = None,
    ) -> None:
        self._scope = scope
        self._embedder = embedder
        self.config = config
        self._clock = clock
        self._orchestrator = orchestrator or BatchOrchestrator(
            batch_size=config.matching_batch_size,
            pause_seconds=config.batch_pause_seconds,
        )

    async def load_targets(self, max_companies: int) -> List[CompanyRefreshTarget]:
        async with self._scope() as repos:
            return await repos.companies.list_refresh_targets(max_companies)

    async def score_and_store(
        self, repos: Repositories, target: CompanyRefreshTarget
    ) -> List[MatchingResult]:
        """Score one company inside an open unit of work and append its results."""
        if target.preference is None:
            raise ItemSkipped(f"company {target.company_id} has no matching preference")
        if target.user_id is None:
            raise ItemSkipped(f"company {target.company_id} has no members")

        preferences = MatchPreferences.from_record(target.preference)
        scorer = MatchScorer(
            repos,
            EmbeddingStore(repos.embeddings, self._embedder),
            self.config.scoring,
            clock=self._clock,
        )
        matches = await scorer.score(target.company_id, target.user_id, preferences)

        # One timestamp per refresh marks the set as a unit.
        stamped = datetime.now(timezone.utc)
        rows = [
            MatchingResult(
                id=uuid.uuid4(),
                company_id=target.company_id,
                user_id=target.user_id,
                project_id=m.project_id,
                total_score=m.total_score,
                category_score=m.category_score,
                region_score=m.region_score,
                amount_score=m.amount_score,
                semantic_score=m.semantic_score,
                industry_score=m.industry_score,
                eligibility_score=m.eligibility_score,
                confidence=m.confidence,
                match_reasons=m.match_reasons,
                created_at=stamped,
            )
            for m in matches[: self.config.scoring.max_results_stored]
        ]
        await repos.results.add_many(rows)
        logger.info(f"Stored {len(rows)} matching results for company {target.company_id}")
        return rows

    async def refresh_company(self, target: CompanyRefreshTarget) -> None:
        async with self._scope() as repos:
            await self.score_and_store(repos, target)

    async def run(
        self, targets: List[CompanyRefreshTarget], batch_size: Optional[int] = None
    ) -> BatchReport:
        return await self._orchestrator.run(
            targets,
            self.refresh_company,
            batch_size=batch_size,
            item_id=lambda t: str(t.company_id),
            label="matching-refresh",
        )
