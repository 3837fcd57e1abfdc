"""Matching router: background refresh, stats, preferences, single-company refresh."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from grantmatch.batch import ItemSkipped
from grantmatch.config import EngineConfig
from grantmatch.deps import (
    _safe_error,
    get_config,
    get_embedder,
    get_repositories,
    get_scope,
    get_supervisor,
    require_worker_token,
)
from grantmatch.embedding_store import Embedder
from grantmatch.matching import MatchPreferences, PreferenceError
from grantmatch.models.batch import BatchJobResponse
from grantmatch.models.matching import (
    CompanyMatchingResponse,
    MatchingBatchAccepted,
    MatchingBatchRequest,
    MatchingPreferenceRequest,
    MatchingPreferenceResponse,
    MatchingResultResponse,
    MatchingStatsResponse,
)
from grantmatch.repositories.base import Repositories, RepositoryScope
from grantmatch.security import get_client_ip, rate_limit_batch
from grantmatch.services.matching_refresh_service import MatchingRefreshService
from grantmatch.worker import JOB_MATCHING_REFRESH, JobSupervisor

logger = logging.getLogger(__name__)
router = APIRouter(tags=["matching"], dependencies=[Depends(require_worker_token)])


# ============================================================================
# Batch refresh
# ============================================================================


@router.post(
    "/matching/batch",
    response_model=MatchingBatchAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
@rate_limit_batch()
async def trigger_matching_batch(
    request: Request,
    response: Response,
    body: Optional[MatchingBatchRequest] = None,
    config: EngineConfig = Depends(get_config),
    embedder: Embedder = Depends(get_embedder),
    scope: RepositoryScope = Depends(get_scope),
    supervisor: JobSupervisor = Depends(get_supervisor),
):
    """
    Queue a matching refresh for up to ``maxCompanies`` companies.

    The response is sent once the job row exists; scoring continues in the
    background in chunks of ``batchSize``.  With no company holding a
    preference nothing is queued and the response is 200 with
    ``accepted: false``.

    Raises:
        HTTPException 500: loading companies or recording the job failed.
    """
    body = body or MatchingBatchRequest(
        batch_size=config.matching_batch_size,
        max_companies=config.matching_max_companies,
    )
    service = MatchingRefreshService(scope, embedder, config)

    try:
        targets = await service.load_targets(body.max_companies)
        if not targets:
            logger.info("Matching refresh: no companies with preferences")
            response.status_code = status.HTTP_200_OK
            return MatchingBatchAccepted(
                accepted=False, companies_queued=0, batch_size=body.batch_size
            )

        job = await supervisor.submit(
            JOB_MATCHING_REFRESH,
            lambda: service.run(targets, batch_size=body.batch_size),
            params=body.model_dump(by_alias=True),
            queued_count=len(targets),
            requested_by=get_client_ip(request),
        )
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_safe_error("matching batch", e),
        ) from e

    return MatchingBatchAccepted(
        accepted=True,
        companies_queued=len(targets),
        batch_size=body.batch_size,
        job_id=job.id,
    )


@router.get("/matching/stats", response_model=MatchingStatsResponse)
async def matching_stats(repos: Repositories = Depends(get_repositories)):
    """Company coverage, result volume and the most recent refresh job."""
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    last_job = await repos.jobs.latest(JOB_MATCHING_REFRESH)
    return MatchingStatsResponse(
        total_companies=await repos.companies.count_live(),
        companies_with_preferences=await repos.companies.count_with_preferences(),
        total_matching_results=await repos.results.count(),
        results_last_24_hours=await repos.results.count_since(since),
        last_job=BatchJobResponse.model_validate(last_job) if last_job else None,
    )


# ============================================================================
# Single company
# ============================================================================


@router.post(
    "/companies/{company_id}/matching-preferences",
    response_model=MatchingPreferenceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_matching_preference(
    company_id: uuid.UUID,
    body: MatchingPreferenceRequest,
    repos: Repositories = Depends(get_repositories),
):
    """Store a new preference; the newest one drives the next refresh."""
    if await repos.companies.get_refresh_target(company_id) is None:
        raise HTTPException(status_code=404, detail="Company not found")

    try:
        prefs = MatchPreferences(
            categories=[c.strip() for c in body.categories if c and c.strip()],
            min_amount=body.min_amount,
            max_amount=body.max_amount,
            regions=body.regions or [],
            exclude_keywords=body.exclude_keywords or [],
        ).validate()
    except PreferenceError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    preference = await repos.companies.add_preference(
        company_id,
        categories=prefs.categories,
        min_amount=prefs.min_amount,
        max_amount=prefs.max_amount,
        regions=body.regions,
        exclude_keywords=body.exclude_keywords,
    )
    logger.info(f"Stored matching preference {preference.id} for company {company_id}")
    return MatchingPreferenceResponse.model_validate(preference)


@router.post("/companies/{company_id}/matching", response_model=CompanyMatchingResponse)
async def refresh_company_matching(
    company_id: uuid.UUID,
    repos: Repositories = Depends(get_repositories),
    config: EngineConfig = Depends(get_config),
    embedder: Embedder = Depends(get_embedder),
    scope: RepositoryScope = Depends(get_scope),
):
    """
    Re-score one company now and return the stored results.

    Raises:
        HTTPException 404: unknown or deleted company.
        HTTPException 409: the company has no preference or no members.
        HTTPException 422: the stored preference is corrupt.
    """
    target = await repos.companies.get_refresh_target(company_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Company not found")

    service = MatchingRefreshService(scope, embedder, config)
    try:
        rows = await service.score_and_store(repos, target)
    except ItemSkipped as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except PreferenceError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_safe_error("company matching", e),
        ) from e

    return CompanyMatchingResponse(
        company_id=company_id,
        result_count=len(rows),
        results=[MatchingResultResponse.model_validate(r) for r in rows],
    )
