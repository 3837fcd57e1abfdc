"""
Embedding backfill: vectors for programs flagged ``needs_embedding``.

Each program is embedded in its own unit of work so a failure halfway
through a batch leaves the finished programs committed.  Programs with no
embeddable text are terminal: the flag is cleared and the program is counted
as an error rather than retried on every run.
"""

import logging
from typing import List, Optional

from grantmatch.batch import BatchOrchestrator, BatchReport
from grantmatch.config import EngineConfig
from grantmatch.embedding_store import Embedder, EmbeddingStore, EmptyContentError
from grantmatch.models.db.grant_program import GrantProgram
from grantmatch.repositories.base import RepositoryScope

logger = logging.getLogger(__name__)

_EMBEDDED_FIELDS = (
    "name",
    "summary",
    "description",
    "eligibility",
    "application_process",
    "evaluation_criteria",
    "target",
)


def program_embedding_text(program: GrantProgram) -> str:
    parts = (getattr(program, name) for name in _EMBEDDED_FIELDS)
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


class EmbeddingBackfillService:
    def __init__(
        self,
        scope: RepositoryScope,
        embedder: Embedder,
        config: EngineConfig,
        orchestrator: Optional[BatchOrchestrator] = None,
    ) -> None:
        self._scope = scope
        self._embedder = embedder
        self.config = config
        self._orchestrator = orchestrator or BatchOrchestrator(
            batch_size=config.embedding_chunk_size,
            pause_seconds=config.batch_pause_seconds,
        )

    async def load_pending(self, batch_size: int) -> List[GrantProgram]:
        async with self._scope() as repos:
            return await repos.programs.list_needing_embedding(batch_size)

    async def embed_program(self, program: GrantProgram) -> None:
        text = program_embedding_text(program)
        failure = None
        async with self._scope() as repos:
            store = EmbeddingStore(repos.embeddings, self._embedder)
            try:
                await store.upsert(
                    self.config.embedding_source_type,
                    str(program.id),
                    text,
                    {
                        "name": program.name,
                        "organization": program.organization,
                        "category": program.category,
                        "region": program.region,
                    },
                )
            except EmptyContentError as e:
                failure = e
            await repos.programs.clear_needs_embedding(program.id)

        # Raised after the scope so the cleared flag is committed.
        if failure is not None:
            raise failure

    async def run(self, batch_size: Optional[int] = None) -> BatchReport:
        limit = batch_size or self.config.embedding_batch_size
        pending = await self.load_pending(limit)
        logger.info(f"Embedding backfill: {len(pending)} programs pending (limit {limit})")
        return await self._orchestrator.run(
            pending,
            self.embed_program,
            item_id=lambda p: str(p.id),
            label="embedding-backfill",
        )
