"""
Supervised background jobs for GrantMatch.

HTTP handlers never fire and forget.  They hand long-running work (matching
refresh, embedding backfill, regrouping) to the :class:`JobSupervisor`, which
records the job in ``batch_jobs`` before returning, runs it as a tracked
asyncio task, and writes the outcome back to the same row:

    queued -> processing -> completed | failed

A job body that raises is logged with its traceback and marked ``failed``
with every queued item counted as an error.  ``shutdown()`` waits for running
jobs so an accepted job runs to completion.

Usage:
    supervisor = JobSupervisor(sql_scope, max_concurrent_jobs=1)
    job = await supervisor.submit(
        "matching_refresh",
        lambda: refresh.run(targets, batch_size=10),
        params={"batchSize": 10},
        queued_count=len(targets),
    )
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from grantmatch.models.db.batch_job import BatchJob
from grantmatch.repositories.base import RepositoryScope

logger = logging.getLogger(__name__)

JOB_MATCHING_REFRESH = "matching_refresh"
JOB_EMBEDDING_BACKFILL = "embedding_backfill"
JOB_REGROUP = "regroup"


class JobReport(Protocol):
    def to_summary(self) -> Dict[str, Any]: ...


class JobSupervisor:
    def __init__(self, scope: RepositoryScope, max_concurrent_jobs: int = 1) -> None:
        self._scope = scope
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_jobs))
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        job_type: str,
        work: Callable[[], Awaitable[JobReport]],
        *,
        params: Optional[Dict[str, Any]] = None,
        queued_count: int = 0,
        requested_by: Optional[str] = None,
    ) -> BatchJob:
        """Record a queued job and start it in the background."""
        async with self._scope() as repos:
            job = await repos.jobs.create(
                job_type,
                params=params or {},
                queued_count=queued_count,
                requested_by=requested_by,
            )

        task = asyncio.create_task(
            self._run(job.id, job_type, work), name=f"{job_type}:{job.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            f"Queued {job_type} job {job.id}",
            extra={"job_id": str(job.id), "queued_count": queued_count},
        )
        return job

    async def _run(
        self,
        job_id: uuid.UUID,
        job_type: str,
        work: Callable[[], Awaitable[JobReport]],
    ) -> None:
        async with self._semaphore:
            try:
                async with self._scope() as repos:
                    await repos.jobs.mark_processing(job_id)

                report = await work()

                async with self._scope() as repos:
                    await repos.jobs.mark_completed(job_id, report.to_summary())
                logger.info(f"{job_type} job {job_id} completed")
            except Exception as e:
                logger.exception(f"{job_type} job {job_id} failed: {e}")
                await self._record_failure(job_id, f"{type(e).__name__}: {e}")

    async def _record_failure(self, job_id: uuid.UUID, error: str) -> None:
        try:
            async with self._scope() as repos:
                await repos.jobs.mark_failed(job_id, error)
        except Exception as e:
            logger.error(f"Could not record failure of job {job_id}: {e}")

    async def shutdown(self) -> None:
        """Wait for every running job to finish."""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} background job(s) to finish")
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
