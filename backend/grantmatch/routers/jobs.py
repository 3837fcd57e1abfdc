"""Background job status router."""

import uuid

from fastapi import APIRouter, Depends, HTTPException

from grantmatch.deps import get_repositories, require_worker_token
from grantmatch.models.batch import BatchJobResponse
from grantmatch.repositories.base import Repositories

router = APIRouter(tags=["jobs"], dependencies=[Depends(require_worker_token)])


@router.get("/jobs/{job_id}", response_model=BatchJobResponse)
async def get_job(job_id: uuid.UUID, repos: Repositories = Depends(get_repositories)):
    job = await repos.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return BatchJobResponse.model_validate(job)
