"""
Repository interfaces for the matching engine.

The engine never issues queries itself.  Each entity is reached through a
small async interface so the grouper, scorer and batch services run the same
way against PostgreSQL (``grantmatch.repositories.sql``) and against the
in-memory fakes used by the test suite.

Records are the ORM model instances from ``grantmatch.models.db``.  Callers
read them freely but change state only through repository methods; the
methods documented as *atomic* apply all of their writes in one transaction.
"""

import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from grantmatch.models.db.batch_job import BatchJob
from grantmatch.models.db.company import Company, CompanyMatchPreference
from grantmatch.models.db.duplicate_group import DuplicateGroup
from grantmatch.models.db.grant_program import GrantProgram
from grantmatch.models.db.matching_result import MatchingResult

GroupKey = Tuple[str, Optional[int]]


@dataclass
class CompanyRefreshTarget:
    """A company queued for a matching refresh.

    ``preference`` is the newest preference row and ``user_id`` the first
    member; either may be missing, in which case the refresh skips it.
    """

    company: Company
    preference: Optional[CompanyMatchPreference]
    user_id: Optional[uuid.UUID]

    @property
    def company_id(self) -> uuid.UUID:
        return self.company.id


class GrantProgramRepository(Protocol):
    async def list_live(
        self, *, changed_since: Optional[datetime] = None
    ) -> List[GrantProgram]: ...

    async def list_by_keys(self, keys: Iterable[GroupKey]) -> List[GrantProgram]:
        """Live programs whose stored ``(normalized_name, project_year)`` is in *keys*."""
        ...

    async def set_normalized(
        self, program_id: uuid.UUID, normalized_name: str, project_year: Optional[int]
    ) -> None: ...

    async def list_needing_embedding(self, limit: int) -> List[GrantProgram]:
        """Live programs flagged ``needs_embedding``, newest update first."""
        ...

    async def clear_needs_embedding(self, program_id: uuid.UUID) -> None: ...

    async def list_match_candidates(
        self, now: datetime, limit: int
    ) -> List[GrantProgram]:
        """Live, active programs still open at *now* (or permanent).

        Non-canonical members of groups that are not ``rejected`` are left out.
        """
        ...

    async def count_live(self) -> int: ...

    async def count_needing_embedding(self) -> int: ...


class DuplicateGroupRepository(Protocol):
    async def get(self, group_id: uuid.UUID) -> Optional[DuplicateGroup]: ...

    async def list_for_keys(self, keys: Iterable[GroupKey]) -> List[DuplicateGroup]: ...

    async def members(self, group_id: uuid.UUID) -> List[GrantProgram]:
        """Live programs pointing at the group."""
        ...

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
        """Atomic: insert the group and attach its members."""
        ...

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
        """Atomic: detach former members, attach *member_ids*, reset canonical flags."""
        ...

    async def set_review_status(
        self, group_id: uuid.UUID, status: str, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]: ...

    async def reassign_canonical(
        self, group_id: uuid.UUID, program_id: uuid.UUID, reviewed_by: Optional[str]
    ) -> Optional[DuplicateGroup]:
        """Atomic: move the canonical flag to *program_id*.

        Returns ``None`` without writing when the program is not a live member.
        """
        ...

    async def dissolve(self, group_id: uuid.UUID) -> int:
        """Atomic: detach every member and delete the group.  Returns members detached."""
        ...

    async def list(
        self, *, status: Optional[str], page: int, page_size: int
    ) -> Tuple[List[DuplicateGroup], int]: ...

    async def status_counts(self) -> Dict[str, int]: ...


class MatchingResultRepository(Protocol):
    async def add_many(self, results: List[MatchingResult]) -> None:
        """Append rows; existing rows are never touched."""
        ...

    async def count(self) -> int: ...

    async def count_since(self, since: datetime) -> int: ...

    async def latest_for_company(self, company_id: uuid.UUID) -> List[MatchingResult]:
        """Rows from the most recent refresh of the company, best score first."""
        ...


class CompanyRepository(Protocol):
    async def list_refresh_targets(self, limit: int) -> List[CompanyRefreshTarget]:
        """Live companies that have at least one preference, oldest company first."""
        ...

    async def get_refresh_target(
        self, company_id: uuid.UUID
    ) -> Optional[CompanyRefreshTarget]: ...

    async def add_preference(
        self,
        company_id: uuid.UUID,
        *,
        categories: List[str],
        min_amount: Optional[int],
        max_amount: Optional[int],
        regions: Optional[List[str]],
        exclude_keywords: Optional[List[str]],
    ) -> CompanyMatchPreference: ...

    async def count_live(self) -> int: ...

    async def count_with_preferences(self) -> int: ...


class EmbeddingRepository(Protocol):
    async def upsert(
        self,
        source_type: str,
        source_id: str,
        content: str,
        vector: List[float],
        metadata: Dict[str, Any],
    ) -> None: ...

    async def count_by_source_type(self, source_type: str) -> int: ...

    async def get_vectors(
        self, source_type: str, source_ids: Iterable[str]
    ) -> Dict[str, List[float]]: ...

    async def similarity(
        self, source_type: str, query: List[float], source_ids: Iterable[str]
    ) -> Dict[str, float]:
        """Cosine similarity of *query* against each stored vector."""
        ...


class BatchJobRepository(Protocol):
    async def create(
        self,
        job_type: str,
        *,
        params: Dict[str, Any],
        queued_count: int,
        requested_by: Optional[str] = None,
    ) -> BatchJob: ...

    async def mark_processing(self, job_id: uuid.UUID) -> None: ...

    async def mark_completed(self, job_id: uuid.UUID, summary: Dict[str, Any]) -> None: ...

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> None:
        """Record a job whose body raised; every queued item counts as an error."""
        ...

    async def get(self, job_id: uuid.UUID) -> Optional[BatchJob]: ...

    async def latest(self, job_type: str) -> Optional[BatchJob]: ...


@dataclass
class Repositories:
    """Every repository bound to one unit of work."""

    programs: GrantProgramRepository
    groups: DuplicateGroupRepository
    results: MatchingResultRepository
    companies: CompanyRepository
    embeddings: EmbeddingRepository
    jobs: BatchJobRepository


# Opens a unit of work that commits on clean exit and rolls back on error.
RepositoryScope = Callable[[], AbstractAsyncContextManager[Repositories]]
