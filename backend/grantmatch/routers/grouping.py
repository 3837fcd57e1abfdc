"""Grouper trigger router."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from grantmatch.config import EngineConfig
from grantmatch.deduplication import GroupingReport, SimilarityGrouper
from grantmatch.deps import (
    _safe_error,
    get_config,
    get_scope,
    get_supervisor,
    require_worker_token,
)
from grantmatch.models.batch import JobAcceptedResponse, RegroupRequest
from grantmatch.repositories.base import RepositoryScope
from grantmatch.security import get_client_ip, rate_limit_batch
from grantmatch.worker import JOB_REGROUP, JobSupervisor

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/grouping", tags=["grouping"], dependencies=[Depends(require_worker_token)]
)


@router.post(
    "/run",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@rate_limit_batch()
async def run_grouping(
    request: Request,
    body: Optional[RegroupRequest] = None,
    config: EngineConfig = Depends(get_config),
    scope: RepositoryScope = Depends(get_scope),
    supervisor: JobSupervisor = Depends(get_supervisor),
):
    """
    Queue a grouper run over the live catalog.

    ``projectYear`` limits the run to one year; ``changedSinceHours`` rescans
    only recently updated programs (plus everything sharing their keys).

    Returns:
        The accepted job; poll ``/jobs/{jobId}`` for the grouping report.
    """
    body = body or RegroupRequest()
    changed_since: Optional[datetime] = None
    if body.changed_since_hours is not None:
        changed_since = datetime.now(timezone.utc) - timedelta(hours=body.changed_since_hours)

    async def work() -> GroupingReport:
        async with scope() as repos:
            grouper = SimilarityGrouper(repos, config.grouping)
            return await grouper.regroup(
                project_year=body.project_year, changed_since=changed_since
            )

    try:
        job = await supervisor.submit(
            JOB_REGROUP,
            work,
            params=body.model_dump(by_alias=True, exclude_none=True),
            requested_by=get_client_ip(request),
        )
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_safe_error("grouping run", e),
        ) from e
    return JobAcceptedResponse(accepted=True, job_id=job.id, status=job.status)
