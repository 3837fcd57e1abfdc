"""
SQLAlchemy async implementations of the repository interfaces.

Every repository wraps the same ``AsyncSession``; ``sql_repositories(db)``
binds a full :class:`Repositories` bundle to one request session and
``sql_scope()`` opens a standalone unit of work for background jobs.

Multi-statement writes (group create/update, canonical reassignment,
dissolve) run inside ``begin_nested()`` so they either land together or not
at all, even when the caller keeps using the session afterwards.

Engine writes to ``support_projects`` pin ``updated_at`` to its current value:
the timestamp reflects ingestion changes and drives canonical selection.

Usage:
    from grantmatch.repositories.sql import sql_scope

    async with sql_scope() as repos:
        pending = await repos.programs.list_needing_embedding(50)
"""

import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, exists, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from grantmatch.database import session_scope
from grantmatch.models.db.batch_job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    BatchJob,
)
from grantmatch.models.db.company import (
    Company,
    CompanyMatchPreference,
    CompanyMember,
)
from grantmatch.models.db.duplicate_group import REJECTED, DuplicateGroup
from grantmatch.models.db.grant_program import PROGRAM_ACTIVE, GrantProgram
from grantmatch.models.db.matching_result import MatchingResult
from grantmatch.repositories.base import (
    CompanyRefreshTarget,
    GroupKey,
    Repositories,
)

logger = logging.getLogger(__name__)

_FETCH = {"synchronize_session": "fetch"}


def _vector_literal(vector: List[float]) -> str:
    return "[" + ",".join(str(float(v)) for v in vector) + "]"


def _key_condition(model, keys: Iterable[GroupKey]):
    conditions = []
    for name, year in set(keys):
        year_clause = (
            model.project_year.is_(None) if year is None else model.project_year == year
        )
        conditions.append(and_(model.normalized_name == name, year_clause))
    return or_(*conditions) if conditions else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Grant programs
# ============================================================================


class SqlGrantProgramRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def list_live(
        self, *, changed_since: Optional[datetime] = None
    ) -> List[GrantProgram]:
        stmt = select(GrantProgram).where(GrantProgram.deleted_at.is_(None))
        if changed_since is not None:
            stmt = stmt.where(GrantProgram.updated_at >= changed_since)
        stmt = stmt.order_by(GrantProgram.created_at, GrantProgram.id)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_by_keys(self, keys: Iterable[GroupKey]) -> List[GrantProgram]:
        condition = _key_condition(GrantProgram, keys)
        if condition is None:
            return []
        stmt = (
            select(GrantProgram)
            .where(GrantProgram.deleted_at.is_(None), condition)
            .order_by(GrantProgram.created_at, GrantProgram.id)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def set_normalized(
        self, program_id: uuid.UUID, normalized_name: str, project_year: Optional[int]
    ) -> None:
        await self._db.execute(
            update(GrantProgram)
            .where(GrantProgram.id == program_id)
            .values(
                normalized_name=normalized_name,
                project_year=project_year,
                updated_at=GrantProgram.updated_at,
            )
            .execution_options(**_FETCH)
        )

    async def list_needing_embedding(self, limit: int) -> List[GrantProgram]:
        stmt = (
            select(GrantProgram)
            .where(
                GrantProgram.deleted_at.is_(None),
                GrantProgram.needs_embedding.is_(True),
            )
            .order_by(GrantProgram.updated_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def clear_needs_embedding(self, program_id: uuid.UUID) -> None:
        await self._db.execute(
            update(GrantProgram)
            .where(GrantProgram.id == program_id)
            .values(needs_embedding=False, updated_at=GrantProgram.updated_at)
            .execution_options(**_FETCH)
        )

    async def list_match_candidates(
        self, now: datetime, limit: int
    ) -> List[GrantProgram]:
        rejected_groups = select(DuplicateGroup.id).where(
            DuplicateGroup.review_status == REJECTED
        )
        stmt = (
            select(GrantProgram)
            .where(
                GrantProgram.deleted_at.is_(None),
                GrantProgram.status == PROGRAM_ACTIVE,
                or_(
                    GrantProgram.deadline.is_(None),
                    GrantProgram.deadline >= now,
                    GrantProgram.is_permanent.is_(True),
                ),
                or_(
                    GrantProgram.group_id.is_(None),
                    GrantProgram.is_canonical.is_(True),
                    GrantProgram.group_id.in_(rejected_groups),
                ),
            )
            .order_by(GrantProgram.deadline.asc().nulls_last(), GrantProgram.id)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def count_live(self) -> int:
        stmt = select(func.count()).select_from(GrantProgram).where(
            GrantProgram.deleted_at.is_(None)
        )
        return int(await self._db.scalar(stmt) or 0)

    async def count_needing_embedding(self) -> int:
        stmt = select(func.count()).select_from(GrantProgram).where(
            GrantProgram.deleted_at.is_(None),
            GrantProgram.needs_embedding.is_(True),
        )
        return int(await self._db.scalar(stmt) or 0)


# ============================================================================
# Duplicate groups
# ============================================================================


class SqlDuplicateGroupRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, group_id: uuid.UUID) -> Optional[DuplicateGroup]:
        return await self._db.get(DuplicateGroup, group_id)

    async def list_for_keys(self, keys: Iterable[GroupKey]) -> List[DuplicateGroup]:
        condition = _key_condition(DuplicateGroup, keys)
        if condition is None:
            return []
        result = await self._db.execute(
            select(DuplicateGroup).where(condition).order_by(DuplicateGroup.created_at)
        )
        return list(result.scalars().all())

    async def members(self, group_id: uuid.UUID) -> List[GrantProgram]:
        result = await self._db.execute(
            select(GrantProgram)
            .where(
                GrantProgram.group_id == group_id,
                GrantProgram.deleted_at.is_(None),
            )
            .order_by(GrantProgram.is_canonical.desc(), GrantProgram.created_at)
        )
        return list(result.scalars().all())

    async def _live_member_count(self, group_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(GrantProgram).where(
            GrantProgram.group_id == group_id,
            GrantProgram.deleted_at.is_(None),
        )
        return int(await self._db.scalar(stmt) or 0)

    async def _attach(
        self, group_id: uuid.UUID, member_ids: List[uuid.UUID], canonical_id: uuid.UUID
    ) -> None:
        await self._db.execute(
            update(GrantProgram)
            .where(GrantProgram.id.in_(member_ids))
            .values(
                group_id=group_id,
                is_canonical=GrantProgram.id == canonical_id,
                updated_at=GrantProgram.updated_at,
            )
            .execution_options(**_FETCH)
        )

    async def create(
        self,
        *,
        normalized_name: str,
        project_year: Optional[int],
        member_ids: List[uuid.UUID],
        canonical_id: uuid.UUID,
        merge_confidence: float,
        review_status: str,
        fingerprint: str,
        merged_data: Dict[str, Any],
    ) -> DuplicateGroup:
        async with self._db.begin_nested():
            group = DuplicateGroup(
                id=uuid.uuid4(),
                normalized_name=normalized_name,
                project_year=project_year,
                canonical_project_id=canonical_id,
                merge_confidence=merge_confidence,
                review_status=review_status,
                source_count=0,
                fingerprint=fingerprint,
                canonical_locked=False,
                merged_data=merged_data,
            )
            self._db.add(group)
            await self._db.flush()
            await self._attach(group.id, member_ids, canonical_id)
            group.source_count = await self._live_member_count(group.id)
            await self._db.flush()
        return group

    async def update_membership(
        self,
        group_id: uuid.UUID,
        *,
        normalized_name: str,
        project_year: Optional[int],
        member_ids: List[uuid.UUID],
        canonical_id: uuid.UUID,
        canonical_locked: bool,
        merge_confidence: float,
        review_status: str,
        fingerprint: str,
        merged_data: Dict[str, Any],
    ) -> DuplicateGroup:
        async with self._db.begin_nested():
            group = await self._db.get(DuplicateGroup, group_id, with_for_update=True)
            if group is None:
                raise LookupError(f"duplicate group {group_id} not found")

            await self._db.execute(
                update(GrantProgram)
                .where(
                    GrantProgram.group_id == group_id,
                    GrantProgram.id.not_in(member_ids),
                )
                .values(
                    group_id=None,
                    is_canonical=False,
                    updated_at=GrantProgram.updated_at,
                )
                .execution_options(**_FETCH)
            )
            await self._attach(group_id, member_ids, canonical_id)

            group.normalized_name = normalized_name
            group.project_year = project_year
            group.canonical_project_id = canonical_id
            group.canonical_locked = canonical_locked
            group.merge_confidence = merge_confidence
            group.review_status = review_status
            group.fingerprint = fingerprint
            group.merged_data = merged_data
            group.source_count = await self._live_member_count(group_id)
            await self._db.flush()
        return group

    async def set_review_status(
        self, group_id: uuid.UUID, status: str, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]:
        group = await self._db.get(DuplicateGroup, group_id)
        if group is None:
            return None
        group.review_status = status
        group.reviewed_by = reviewed_by
        group.reviewed_at = _now()
        await self._db.flush()
        return group

    async def reassign_canonical(
        self, group_id: uuid.UUID, program_id: uuid.UUID, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]:
        async with self._db.begin_nested():
            group = await self._db.get(DuplicateGroup, group_id, with_for_update=True)
            if group is None:
                return None
            member = await self._db.scalar(
                select(GrantProgram.id)
                .where(
                    GrantProgram.id == program_id,
                    GrantProgram.group_id == group_id,
                    GrantProgram.deleted_at.is_(None),
                )
                .with_for_update()
            )
            if member is None:
                return None

            await self._db.execute(
                update(GrantProgram)
                .where(GrantProgram.group_id == group_id)
                .values(
                    is_canonical=GrantProgram.id == program_id,
                    updated_at=GrantProgram.updated_at,
                )
                .execution_options(**_FETCH)
            )
            group.canonical_project_id = program_id
            group.canonical_locked = True
            group.reviewed_by = reviewed_by
            group.reviewed_at = _now()
            await self._db.flush()
        return group

    async def dissolve(self, group_id: uuid.UUID) -> int:
        async with self._db.begin_nested():
            detached = await self._live_member_count(group_id)
            await self._db.execute(
                update(GrantProgram)
                .where(GrantProgram.group_id == group_id)
                .values(
                    group_id=None,
                    is_canonical=False,
                    updated_at=GrantProgram.updated_at,
                )
                .execution_options(**_FETCH)
            )
            await self._db.execute(
                delete(DuplicateGroup)
                .where(DuplicateGroup.id == group_id)
                .execution_options(**_FETCH)
            )
        logger.info(f"Dissolved duplicate group {group_id} ({detached} members detached)")
        return detached

    async def list(
        self, *, status: Optional[str], page: int, page_size: int
    ) -> Tuple[List[DuplicateGroup], int]:
        stmt = select(DuplicateGroup)
        count_stmt = select(func.count()).select_from(DuplicateGroup)
        if status is not None:
            stmt = stmt.where(DuplicateGroup.review_status == status)
            count_stmt = count_stmt.where(DuplicateGroup.review_status == status)

        stmt = (
            stmt.order_by(DuplicateGroup.created_at.desc(), DuplicateGroup.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._db.execute(stmt)
        total = int(await self._db.scalar(count_stmt) or 0)
        return list(result.scalars().all()), total

    async def status_counts(self) -> Dict[str, int]:
        result = await self._db.execute(
            select(DuplicateGroup.review_status, func.count()).group_by(
                DuplicateGroup.review_status
            )
        )
        return {status: int(count) for status, count in result.all()}


# ============================================================================
# Matching results
# ============================================================================


class SqlMatchingResultRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def add_many(self, results: List[MatchingResult]) -> None:
        if not results:
            return
        self._db.add_all(results)
        await self._db.flush()

    async def count(self) -> int:
        return int(
            await self._db.scalar(select(func.count()).select_from(MatchingResult)) or 0
        )

    async def count_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(MatchingResult).where(
            MatchingResult.created_at >= since
        )
        return int(await self._db.scalar(stmt) or 0)

    async def latest_for_company(self, company_id: uuid.UUID) -> List[MatchingResult]:
        latest = (
            select(func.max(MatchingResult.created_at))
            .where(MatchingResult.company_id == company_id)
            .scalar_subquery()
        )
        result = await self._db.execute(
            select(MatchingResult)
            .where(
                MatchingResult.company_id == company_id,
                MatchingResult.created_at == latest,
            )
            .order_by(MatchingResult.total_score.desc(), MatchingResult.project_id)
        )
        return list(result.scalars().all())


# ============================================================================
# Companies
# ============================================================================


class SqlCompanyRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def _latest_preferences(
        self, company_ids: List[uuid.UUID]
    ) -> Dict[uuid.UUID, CompanyMatchPreference]:
        result = await self._db.execute(
            select(CompanyMatchPreference)
            .where(CompanyMatchPreference.company_id.in_(company_ids))
            .order_by(CompanyMatchPreference.created_at.desc())
        )
        latest: Dict[uuid.UUID, CompanyMatchPreference] = {}
        for preference in result.scalars().all():
            latest.setdefault(preference.company_id, preference)
        return latest

    async def _first_members(
        self, company_ids: List[uuid.UUID]
    ) -> Dict[uuid.UUID, uuid.UUID]:
        result = await self._db.execute(
            select(CompanyMember)
            .where(CompanyMember.company_id.in_(company_ids))
            .order_by(CompanyMember.created_at.asc())
        )
        first: Dict[uuid.UUID, uuid.UUID] = {}
        for member in result.scalars().all():
            first.setdefault(member.company_id, member.user_id)
        return first

    async def _targets(self, companies: List[Company]) -> List[CompanyRefreshTarget]:
        if not companies:
            return []
        ids = [c.id for c in companies]
        preferences = await self._latest_preferences(ids)
        members = await self._first_members(ids)
        return [
            CompanyRefreshTarget(
                company=c,
                preference=preferences.get(c.id),
                user_id=members.get(c.id),
            )
            for c in companies
        ]

    async def list_refresh_targets(self, limit: int) -> List[CompanyRefreshTarget]:
        has_preference = exists().where(CompanyMatchPreference.company_id == Company.id)
        result = await self._db.execute(
            select(Company)
            .where(Company.deleted_at.is_(None), has_preference)
            .order_by(Company.created_at, Company.id)
            .limit(limit)
        )
        return await self._targets(list(result.scalars().all()))

    async def get_refresh_target(
        self, company_id: uuid.UUID
    ) -> Optional[CompanyRefreshTarget]:
        company = await self._db.get(Company, company_id)
        if company is None or company.deleted_at is not None:
            return None
        targets = await self._targets([company])
        return targets[0]

    async def add_preference(
        self,
        company_id: uuid.UUID,
        *,
        categories: List[str],
        min_amount: Optional[int],
        max_amount: Optional[int],
        regions: Optional[List[str]],
        exclude_keywords: Optional[List[str]],
    ) -> CompanyMatchPreference:
        preference = CompanyMatchPreference(
            id=uuid.uuid4(),
            company_id=company_id,
            categories=categories,
            min_amount=min_amount,
            max_amount=max_amount,
            regions=regions,
            exclude_keywords=exclude_keywords,
            created_at=_now(),
        )
        self._db.add(preference)
        await self._db.flush()
        return preference

    async def count_live(self) -> int:
        stmt = select(func.count()).select_from(Company).where(
            Company.deleted_at.is_(None)
        )
        return int(await self._db.scalar(stmt) or 0)

    async def count_with_preferences(self) -> int:
        stmt = (
            select(func.count(func.distinct(CompanyMatchPreference.company_id)))
            .join(Company, Company.id == CompanyMatchPreference.company_id)
            .where(Company.deleted_at.is_(None))
        )
        return int(await self._db.scalar(stmt) or 0)


# ============================================================================
# Embeddings (pgvector)
# ============================================================================


class SqlEmbeddingRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert(
        self,
        source_type: str,
        source_id: str,
        content: str,
        vector: List[float],
        metadata: Dict[str, Any],
    ) -> None:
        await self._db.execute(
            text(
                """
                INSERT INTO document_embeddings
                    (source_type, source_id, content, embedding, metadata)
                VALUES
                    (:source_type, :source_id, :content,
                     CAST(:vec AS vector), CAST(:metadata AS jsonb))
                ON CONFLICT (source_type, source_id) DO UPDATE SET
                    content = EXCLUDED.content,
                    embedding = EXCLUDED.embedding,
                    metadata = EXCLUDED.metadata,
                    updated_at = NOW()
                """
            ),
            {
                "source_type": source_type,
                "source_id": source_id,
                "content": content,
                "vec": _vector_literal(vector),
                "metadata": json.dumps(metadata, ensure_ascii=False, default=str),
            },
        )

    async def count_by_source_type(self, source_type: str) -> int:
        result = await self._db.execute(
            text(
                """
                SELECT COUNT(DISTINCT source_id)
                FROM document_embeddings
                WHERE source_type = :source_type AND embedding IS NOT NULL
                """
            ),
            {"source_type": source_type},
        )
        return int(result.scalar() or 0)

    async def get_vectors(
        self, source_type: str, source_ids: Iterable[str]
    ) -> Dict[str, List[float]]:
        ids = list(source_ids)
        if not ids:
            return {}
        result = await self._db.execute(
            text(
                """
                SELECT source_id, CAST(embedding AS text) AS embedding
                FROM document_embeddings
                WHERE source_type = :source_type
                  AND source_id = ANY(:ids)
                  AND embedding IS NOT NULL
                """
            ),
            {"source_type": source_type, "ids": ids},
        )
        return {
            row["source_id"]: json.loads(row["embedding"])
            for row in result.mappings().all()
        }

    async def similarity(
        self, source_type: str, query: List[float], source_ids: Iterable[str]
    ) -> Dict[str, float]:
        ids = list(source_ids)
        if not ids:
            return {}
        result = await self._db.execute(
            text(
                """
                SELECT
                    source_id,
                    CAST(1 - (embedding <=> CAST(:embedding AS vector)) AS float) AS similarity
                FROM document_embeddings
                WHERE source_type = :source_type
                  AND source_id = ANY(:ids)
                  AND embedding IS NOT NULL
                """
            ),
            {
                "embedding": _vector_literal(query),
                "source_type": source_type,
                "ids": ids,
            },
        )
        return {
            row["source_id"]: float(row["similarity"])
            for row in result.mappings().all()
        }


# ============================================================================
# Batch jobs
# ============================================================================


class SqlBatchJobRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create(
        self,
        job_type: str,
        *,
        params: Dict[str, Any],
        queued_count: int,
        requested_by: Optional[str] = None,
    ) -> BatchJob:
        job = BatchJob(
            id=uuid.uuid4(),
            job_type=job_type,
            status=JOB_QUEUED,
            params=params,
            queued_count=queued_count,
            requested_by=requested_by,
            created_at=_now(),
        )
        self._db.add(job)
        await self._db.flush()
        return job

    async def _require(self, job_id: uuid.UUID) -> BatchJob:
        job = await self._db.get(BatchJob, job_id)
        if job is None:
            raise LookupError(f"batch job {job_id} not found")
        return job

    async def mark_processing(self, job_id: uuid.UUID) -> None:
        job = await self._require(job_id)
        job.status = JOB_PROCESSING
        job.started_at = _now()
        await self._db.flush()

    async def mark_completed(self, job_id: uuid.UUID, summary: Dict[str, Any]) -> None:
        job = await self._require(job_id)
        job.status = JOB_COMPLETED
        job.processed = int(summary.get("processed", 0))
        job.success_count = int(summary.get("success_count", 0))
        job.error_count = int(summary.get("error_count", 0))
        job.skipped_count = int(summary.get("skipped_count", 0))
        job.error_details = list(summary.get("error_details", []))
        job.result_summary = summary
        job.completed_at = _now()
        await self._db.flush()

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> None:
        job = await self._require(job_id)
        job.status = JOB_FAILED
        job.error_message = error
        job.error_count = job.queued_count
        job.completed_at = _now()
        await self._db.flush()

    async def get(self, job_id: uuid.UUID) -> Optional[BatchJob]:
        return await self._db.get(BatchJob, job_id)

    async def latest(self, job_type: str) -> Optional[BatchJob]:
        return await self._db.scalar(
            select(BatchJob)
            .where(BatchJob.job_type == job_type)
            .order_by(BatchJob.created_at.desc())
            .limit(1)
        )


# ============================================================================
# Wiring
# ============================================================================


def sql_repositories(db: AsyncSession) -> Repositories:
    return Repositories(
        programs=SqlGrantProgramRepository(db),
        groups=SqlDuplicateGroupRepository(db),
        results=SqlMatchingResultRepository(db),
        companies=SqlCompanyRepository(db),
        embeddings=SqlEmbeddingRepository(db),
        jobs=SqlBatchJobRepository(db),
    )


@asynccontextmanager
async def sql_scope() -> AsyncIterator[Repositories]:
    """Standalone unit of work for background jobs (commit on clean exit)."""
    async with session_scope() as db:
        yield sql_repositories(db)
