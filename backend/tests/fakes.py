"""
In-memory repositories for engine and API tests.

All fakes share one :class:`FakeStore` so a scope opened by a background job
sees what the test (or another scope) wrote, the way separate sessions see
committed rows.  Records are real ORM instances that never touch a session.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from grantmatch.embedding_store import cosine_similarity
from grantmatch.models.db.batch_job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    BatchJob,
)
from grantmatch.models.db.company import Company, CompanyMatchPreference, CompanyMember
from grantmatch.models.db.duplicate_group import REJECTED, DuplicateGroup
from grantmatch.models.db.grant_program import PROGRAM_ACTIVE, GrantProgram
from grantmatch.models.db.matching_result import MatchingResult
from grantmatch.repositories.base import CompanyRefreshTarget, GroupKey, Repositories


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _epoch(value: Optional[datetime]) -> float:
    return value.timestamp() if value else 0.0


class FakeStore:
    def __init__(self) -> None:
        self.programs: Dict[uuid.UUID, GrantProgram] = {}
        self.groups: Dict[uuid.UUID, DuplicateGroup] = {}
        self.results: List[MatchingResult] = []
        self.companies: Dict[uuid.UUID, Company] = {}
        self.members: List[CompanyMember] = []
        self.preferences: List[CompanyMatchPreference] = []
        self.embeddings: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.jobs: Dict[uuid.UUID, BatchJob] = {}

    def add_program(self, program: GrantProgram) -> GrantProgram:
        self.programs[program.id] = program
        return program

    def add_company(
        self,
        company: Company,
        *,
        preference: Optional[CompanyMatchPreference] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Company:
        self.companies[company.id] = company
        if preference is not None:
            self.preferences.append(preference)
        if user_id is not None:
            self.members.append(
                CompanyMember(company_id=company.id, user_id=user_id, created_at=_now())
            )
        return company

    def group_members(self, group_id: uuid.UUID) -> List[GrantProgram]:
        return [
            p
            for p in self.programs.values()
            if p.group_id == group_id and p.deleted_at is None
        ]


class FakeGrantProgramRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    def _live(self) -> List[GrantProgram]:
        programs = [p for p in self.store.programs.values() if p.deleted_at is None]
        return sorted(programs, key=lambda p: (_epoch(p.created_at), str(p.id)))

    async def list_live(self, *, changed_since: Optional[datetime] = None) -> List[GrantProgram]:
        programs = self._live()
        if changed_since is not None:
            programs = [p for p in programs if p.updated_at and p.updated_at >= changed_since]
        return programs

    async def list_by_keys(self, keys: Iterable[GroupKey]) -> List[GrantProgram]:
        wanted = set(keys)
        return [p for p in self._live() if (p.normalized_name, p.project_year) in wanted]

    async def set_normalized(
        self, program_id: uuid.UUID, normalized_name: str, project_year: Optional[int]
    ) -> None:
        program = self.store.programs[program_id]
        program.normalized_name = normalized_name
        program.project_year = project_year

    async def list_needing_embedding(self, limit: int) -> List[GrantProgram]:
        pending = [p for p in self._live() if p.needs_embedding]
        pending.sort(key=lambda p: _epoch(p.updated_at), reverse=True)
        return pending[:limit]

    async def clear_needs_embedding(self, program_id: uuid.UUID) -> None:
        self.store.programs[program_id].needs_embedding = False

    async def list_match_candidates(self, now: datetime, limit: int) -> List[GrantProgram]:
        candidates = []
        for p in self._live():
            if p.status != PROGRAM_ACTIVE:
                continue
            if p.deadline is not None and p.deadline < now and not p.is_permanent:
                continue
            if p.group_id is not None and not p.is_canonical:
                group = self.store.groups.get(p.group_id)
                if group is None or group.review_status != REJECTED:
                    continue
            candidates.append(p)
        candidates.sort(
            key=lambda p: (p.deadline is None, _epoch(p.deadline), str(p.id))
        )
        return candidates[:limit]

    async def count_live(self) -> int:
        return len(self._live())

    async def count_needing_embedding(self) -> int:
        return sum(1 for p in self._live() if p.needs_embedding)


class FakeDuplicateGroupRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get(self, group_id: uuid.UUID) -> Optional[DuplicateGroup]:
        return self.store.groups.get(group_id)

    async def list_for_keys(self, keys: Iterable[GroupKey]) -> List[DuplicateGroup]:
        wanted = set(keys)
        return [
            g
            for g in self.store.groups.values()
            if (g.normalized_name, g.project_year) in wanted
        ]

    async def members(self, group_id: uuid.UUID) -> List[GrantProgram]:
        members = self.store.group_members(group_id)
        return sorted(members, key=lambda p: (not p.is_canonical, _epoch(p.created_at)))

    def _attach(
        self, group_id: uuid.UUID, member_ids: List[uuid.UUID], canonical_id: uuid.UUID
    ) -> None:
        for member_id in member_ids:
            program = self.store.programs[member_id]
            program.group_id = group_id
            program.is_canonical = member_id == canonical_id

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
        now = _now()
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
            created_at=now,
            updated_at=now,
        )
        self.store.groups[group.id] = group
        self._attach(group.id, member_ids, canonical_id)
        group.source_count = len(self.store.group_members(group.id))
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
        group = self.store.groups.get(group_id)
        if group is None:
            raise LookupError(f"duplicate group {group_id} not found")
        for program in self.store.programs.values():
            if program.group_id == group_id and program.id not in member_ids:
                program.group_id = None
                program.is_canonical = False
        self._attach(group_id, member_ids, canonical_id)

        group.normalized_name = normalized_name
        group.project_year = project_year
        group.canonical_project_id = canonical_id
        group.canonical_locked = canonical_locked
        group.merge_confidence = merge_confidence
        group.review_status = review_status
        group.fingerprint = fingerprint
        group.merged_data = merged_data
        group.source_count = len(self.store.group_members(group_id))
        group.updated_at = _now()
        return group

    async def set_review_status(
        self, group_id: uuid.UUID, status: str, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]:
        group = self.store.groups.get(group_id)
        if group is None:
            return None
        group.review_status = status
        group.reviewed_by = reviewed_by
        group.reviewed_at = _now()
        return group

    async def reassign_canonical(
        self, group_id: uuid.UUID, program_id: uuid.UUID, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]:
        group = self.store.groups.get(group_id)
        if group is None:
            return None
        if program_id not in {p.id for p in self.store.group_members(group_id)}:
            return None
        for program in self.store.programs.values():
            if program.group_id == group_id:
                program.is_canonical = program.id == program_id
        group.canonical_project_id = program_id
        group.canonical_locked = True
        group.reviewed_by = reviewed_by
        group.reviewed_at = _now()
        return group

    async def dissolve(self, group_id: uuid.UUID) -> int:
        detached = len(self.store.group_members(group_id))
        for program in self.store.programs.values():
            if program.group_id == group_id:
                program.group_id = None
                program.is_canonical = False
        self.store.groups.pop(group_id, None)
        return detached

    async def list(
        self, *, status: Optional[str], page: int, page_size: int
    ) -> Tuple[List[DuplicateGroup], int]:
        groups = [
            g
            for g in self.store.groups.values()
            if status is None or g.review_status == status
        ]
        groups.sort(key=lambda g: (-_epoch(g.created_at), str(g.id)))
        start = (page - 1) * page_size
        return groups[start : start + page_size], len(groups)

    async def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for group in self.store.groups.values():
            counts[group.review_status] = counts.get(group.review_status, 0) + 1
        return counts


class FakeMatchingResultRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def add_many(self, results: List[MatchingResult]) -> None:
        for result in results:
            if result.created_at is None:
                result.created_at = _now()
            self.store.results.append(result)

    async def count(self) -> int:
        return len(self.store.results)

    async def count_since(self, since: datetime) -> int:
        return sum(1 for r in self.store.results if r.created_at >= since)

    async def latest_for_company(self, company_id: uuid.UUID) -> List[MatchingResult]:
        rows = [r for r in self.store.results if r.company_id == company_id]
        if not rows:
            return []
        latest = max(r.created_at for r in rows)
        rows = [r for r in rows if r.created_at == latest]
        return sorted(rows, key=lambda r: (-r.total_score, str(r.project_id)))


class FakeCompanyRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    def _target(self, company: Company) -> CompanyRefreshTarget:
        preferences = [p for p in self.store.preferences if p.company_id == company.id]
        members = [m for m in self.store.members if m.company_id == company.id]
        preference = max(preferences, key=lambda p: p.created_at) if preferences else None
        member = min(members, key=lambda m: m.created_at) if members else None
        return CompanyRefreshTarget(
            company=company,
            preference=preference,
            user_id=member.user_id if member else None,
        )

    def _live(self) -> List[Company]:
        companies = [c for c in self.store.companies.values() if c.deleted_at is None]
        return sorted(companies, key=lambda c: (_epoch(c.created_at), str(c.id)))

    async def list_refresh_targets(self, limit: int) -> List[CompanyRefreshTarget]:
        with_preferences = {p.company_id for p in self.store.preferences}
        return [self._target(c) for c in self._live() if c.id in with_preferences][:limit]

    async def get_refresh_target(self, company_id: uuid.UUID) -> Optional[CompanyRefreshTarget]:
        company = self.store.companies.get(company_id)
        if company is None or company.deleted_at is not None:
            return None
        return self._target(company)

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
        self.store.preferences.append(preference)
        return preference

    async def count_live(self) -> int:
        return len(self._live())

    async def count_with_preferences(self) -> int:
        live = {c.id for c in self._live()}
        return len({p.company_id for p in self.store.preferences if p.company_id in live})


class FakeEmbeddingRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def upsert(
        self,
        source_type: str,
        source_id: str,
        content: str,
        vector: List[float],
        metadata: Dict[str, Any],
    ) -> None:
        self.store.embeddings[(source_type, source_id)] = {
            "content": content,
            "vector": list(vector),
            "metadata": dict(metadata),
        }

    async def count_by_source_type(self, source_type: str) -> int:
        return sum(1 for kind, _ in self.store.embeddings if kind == source_type)

    async def get_vectors(
        self, source_type: str, source_ids: Iterable[str]
    ) -> Dict[str, List[float]]:
        vectors = {}
        for source_id in source_ids:
            row = self.store.embeddings.get((source_type, source_id))
            if row is not None:
                vectors[source_id] = row["vector"]
        return vectors

    async def similarity(
        self, source_type: str, query: List[float], source_ids: Iterable[str]
    ) -> Dict[str, float]:
        vectors = await self.get_vectors(source_type, source_ids)
        return {sid: cosine_similarity(query, vec) for sid, vec in vectors.items()}


class FakeBatchJobRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

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
            requested_by=requested_by,
            queued_count=queued_count,
            processed=0,
            success_count=0,
            error_count=0,
            skipped_count=0,
            error_details=[],
            result_summary={},
            created_at=_now(),
        )
        self.store.jobs[job.id] = job
        return job

    async def mark_processing(self, job_id: uuid.UUID) -> None:
        job = self.store.jobs[job_id]
        job.status = JOB_PROCESSING
        job.started_at = _now()

    async def mark_completed(self, job_id: uuid.UUID, summary: Dict[str, Any]) -> None:
        job = self.store.jobs[job_id]
        job.status = JOB_COMPLETED
        job.processed = int(summary.get("processed", 0))
        job.success_count = int(summary.get("success_count", 0))
        job.error_count = int(summary.get("error_count", 0))
        job.skipped_count = int(summary.get("skipped_count", 0))
        job.error_details = list(summary.get("error_details", []))
        job.result_summary = summary
        job.completed_at = _now()

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> None:
        job = self.store.jobs[job_id]
        job.status = JOB_FAILED
        job.error_message = error
        job.error_count = job.queued_count
        job.completed_at = _now()

    async def get(self, job_id: uuid.UUID) -> Optional[BatchJob]:
        return self.store.jobs.get(job_id)

    async def latest(self, job_type: str) -> Optional[BatchJob]:
        jobs = [j for j in self.store.jobs.values() if j.job_type == job_type]
        return max(jobs, key=lambda j: j.created_at) if jobs else None


def fake_repositories(store: FakeStore) -> Repositories:
    return Repositories(
        programs=FakeGrantProgramRepository(store),
        groups=FakeDuplicateGroupRepository(store),
        results=FakeMatchingResultRepository(store),
        companies=FakeCompanyRepository(store),
        embeddings=FakeEmbeddingRepository(store),
        jobs=FakeBatchJobRepository(store),
    )


def fake_scope(store: FakeStore):
    """A ``RepositoryScope`` over *store*; every scope sees the same data."""

    @asynccontextmanager
    async def scope():
        yield fake_repositories(store)

    return scope


# ============================================================================
# Embedder
# ============================================================================


class KeywordEmbedder:
    """Deterministic embedder: one dimension per vocabulary word plus a bias.

    Texts containing any of ``fail_on`` raise, to simulate backend errors.
    """

    def __init__(self, vocabulary: Iterable[str] = (), fail_on: Iterable[str] = ()) -> None:
        self.vocabulary = list(vocabulary)
        self.fail_on = list(fail_on)
        self.calls: List[str] = []

    async def __call__(self, text: str) -> List[float]:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError("embedding backend unavailable")
        return [float(text.count(word)) for word in self.vocabulary] + [0.1]


# ============================================================================
# Factories
# ============================================================================


def make_program(
    name: Optional[str] = "2024년 청년창업지원사업",
    *,
    program_id: Optional[uuid.UUID] = None,
    organization: Optional[str] = "중소벤처기업부",
    category: Optional[str] = "창업",
    sub_category: Optional[str] = None,
    region: Optional[str] = "전국",
    summary: Optional[str] = "청년 창업자를 위한 사업화 자금 지원",
    target: Optional[str] = None,
    description: Optional[str] = None,
    eligibility: Optional[str] = None,
    detail_url: Optional[str] = None,
    attachment_urls: Optional[List[str]] = None,
    amount_min: Optional[int] = None,
    amount_max: Optional[int] = None,
    deadline: Optional[datetime] = None,
    is_permanent: bool = False,
    status: str = PROGRAM_ACTIVE,
    needs_embedding: bool = True,
    group_id: Optional[uuid.UUID] = None,
    is_canonical: bool = False,
    created_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
    deleted_at: Optional[datetime] = None,
) -> GrantProgram:
    """Factory for a live grant program with every engine-read field set."""
    now = _now()
    return GrantProgram(
        id=program_id or uuid.uuid4(),
        external_id=None,
        name=name,
        organization=organization,
        category=category,
        sub_category=sub_category,
        region=region,
        sub_region=None,
        target=target,
        summary=summary,
        description=description,
        eligibility=eligibility,
        application_process=None,
        evaluation_criteria=None,
        detail_url=detail_url,
        attachment_urls=attachment_urls or [],
        amount_min=amount_min,
        amount_max=amount_max,
        deadline=deadline,
        is_permanent=is_permanent,
        status=status,
        normalized_name=None,
        project_year=None,
        group_id=group_id,
        is_canonical=is_canonical,
        needs_embedding=needs_embedding,
        created_at=created_at or now,
        updated_at=updated_at or now,
        deleted_at=deleted_at,
    )


def make_company(
    name: str = "테스트기업",
    *,
    company_id: Optional[uuid.UUID] = None,
    business_category: Optional[str] = "제조업",
    main_business: Optional[str] = "산업용 센서 개발",
    business_items: Optional[List[str]] = None,
    company_type: Optional[str] = "중소기업",
    is_venture: bool = False,
    is_innobiz: bool = False,
    is_mainbiz: bool = False,
    created_at: Optional[datetime] = None,
    deleted_at: Optional[datetime] = None,
) -> Company:
    return Company(
        id=company_id or uuid.uuid4(),
        name=name,
        business_category=business_category,
        main_business=main_business,
        business_items=business_items or [],
        introduction=None,
        vision=None,
        mission=None,
        company_type=company_type,
        is_venture=is_venture,
        is_innobiz=is_innobiz,
        is_mainbiz=is_mainbiz,
        created_at=created_at or _now(),
        deleted_at=deleted_at,
    )


def make_preference(
    company_id: uuid.UUID,
    *,
    categories: Optional[List[str]] = None,
    min_amount: Any = None,
    max_amount: Any = None,
    regions: Optional[List[str]] = None,
    exclude_keywords: Optional[List[str]] = None,
    created_at: Optional[datetime] = None,
) -> CompanyMatchPreference:
    return CompanyMatchPreference(
        id=uuid.uuid4(),
        company_id=company_id,
        categories=categories or [],
        min_amount=min_amount,
        max_amount=max_amount,
        regions=regions,
        exclude_keywords=exclude_keywords,
        created_at=created_at or _now(),
    )
