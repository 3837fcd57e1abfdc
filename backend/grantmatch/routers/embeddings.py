"""Embedding backfill router: synchronous batch run and coverage stats."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from grantmatch.config import EngineConfig
from grantmatch.deps import (
    _safe_error,
    get_config,
    get_embedder,
    get_repositories,
    get_scope,
    require_worker_token,
)
from grantmatch.embedding_store import Embedder
from grantmatch.models.batch import (
    BatchSummaryResponse,
    EmbeddingStatsResponse,
    GenerateEmbeddingsRequest,
)
from grantmatch.repositories.base import Repositories, RepositoryScope
from grantmatch.security import rate_limit_batch
from grantmatch.services.embedding_service import EmbeddingBackfillService

logger = logging.getLogger(__name__)
router = APIRouter(
    tags=["embeddings"], dependencies=[Depends(require_worker_token)]
)


# ============================================================================
# Backfill
# ============================================================================


@router.post("/generate-embeddings", response_model=BatchSummaryResponse)
@rate_limit_batch()
async def generate_embeddings(
    request: Request,
    body: Optional[GenerateEmbeddingsRequest] = None,
    config: EngineConfig = Depends(get_config),
    embedder: Embedder = Depends(get_embedder),
    scope: RepositoryScope = Depends(get_scope),
):
    """
    Embed up to ``batchSize`` programs still flagged ``needs_embedding``.

    Runs inline: the response is the batch summary.  Programs that fail are
    listed in ``errorDetails`` and stay flagged for the next call, except
    programs with no embeddable text, which are cleared.

    Raises:
        HTTPException 500: loading the pending programs failed.
    """
    batch_size = body.batch_size if body is not None else config.embedding_batch_size
    service = EmbeddingBackfillService(scope, embedder, config)
    try:
        report = await service.run(batch_size=batch_size)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_safe_error("embedding backfill", e),
        ) from e
    return BatchSummaryResponse.model_validate(report)


# ============================================================================
# Stats
# ============================================================================


@router.get("/embedding-stats", response_model=EmbeddingStatsResponse)
async def embedding_stats(
    repos: Repositories = Depends(get_repositories),
    config: EngineConfig = Depends(get_config),
):
    """Embedding coverage of the live catalog."""
    total = await repos.programs.count_live()
    pending = await repos.programs.count_needing_embedding()
    embedded = await repos.embeddings.count_by_source_type(config.embedding_source_type)
    rate = round(min(100.0, embedded / total * 100), 1) if total else 0.0
    return EmbeddingStatsResponse(
        total_projects=total,
        needs_embedding=pending,
        has_embeddings=embedded,
        completion_rate=rate,
    )
