"""
Reviewer workflow for duplicate groups.

Groups start as ``pending_review`` or ``auto`` (set by the grouper).  A
reviewer may move any group to ``confirmed``, ``rejected`` or back to
``pending_review``, choose a different canonical member, or dissolve the group
entirely.  ``auto`` is never set by hand.

The repository applies canonical reassignment and dissolution atomically, so
a group never has two canonical members or points at a program outside it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from grantmatch.models.db.duplicate_group import (
    PENDING_REVIEW,
    REVIEW_STATUSES,
    REVIEWER_STATUSES,
    DuplicateGroup,
)
from grantmatch.models.db.grant_program import GrantProgram
from grantmatch.repositories.base import DuplicateGroupRepository

logger = logging.getLogger(__name__)

ALL_STATUSES = "all"


class ReviewError(Exception):
    """Base class for reviewer action failures."""


class GroupNotFoundError(ReviewError):
    pass


class InvalidReviewTransition(ReviewError):
    pass


class CanonicalNotMemberError(ReviewError):
    pass


@dataclass
class GroupPage:
    groups: List[DuplicateGroup]
    total: int
    page: int
    page_size: int
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


class ReviewService:
    def __init__(self, groups: DuplicateGroupRepository) -> None:
        self._groups = groups

    async def list_groups(
        self,
        status: str = PENDING_REVIEW,
        page: int = 1,
        page_size: int = 20,
    ) -> GroupPage:
        if status != ALL_STATUSES and status not in REVIEW_STATUSES:
            raise InvalidReviewTransition(f"Unknown review status: {status}")

        groups, total = await self._groups.list(
            status=None if status == ALL_STATUSES else status,
            page=page,
            page_size=page_size,
        )
        counts = {s: 0 for s in REVIEW_STATUSES}
        counts.update(await self._groups.status_counts())
        return GroupPage(
            groups=groups,
            total=total,
            page=page,
            page_size=page_size,
            status_counts=counts,
        )

    async def get_group(
        self, group_id: uuid.UUID
    ) -> Tuple[DuplicateGroup, List[GrantProgram]]:
        group = await self._groups.get(group_id)
        if group is None:
            raise GroupNotFoundError(f"Duplicate group {group_id} not found")
        return group, await self._groups.members(group_id)

    async def set_review_status(
        self, group_id: uuid.UUID, status: str, reviewed_by: Optional[str] = None
    ) -> DuplicateGroup:
        if status not in REVIEWER_STATUSES:
            raise InvalidReviewTransition(
                f"Reviewers may set {', '.join(REVIEWER_STATUSES)}; got {status!r}"
            )
        group = await self._groups.set_review_status(group_id, status, reviewed_by)
        if group is None:
            raise GroupNotFoundError(f"Duplicate group {group_id} not found")
        logger.info(f"Group {group_id} review status -> {status} (by {reviewed_by or 'unknown'})")
        return group

    async def reassign_canonical(
        self,
        group_id: uuid.UUID,
        program_id: uuid.UUID,
        reviewed_by: Optional[str] = None,
    ) -> DuplicateGroup:
        if await self._groups.get(group_id) is None:
            raise GroupNotFoundError(f"Duplicate group {group_id} not found")

        group = await self._groups.reassign_canonical(group_id, program_id, reviewed_by)
        if group is None:
            raise CanonicalNotMemberError(
                f"Program {program_id} is not a live member of group {group_id}"
            )
        logger.info(f"Group {group_id} canonical -> {program_id}")
        return group

    async def apply_review(
        self,
        group_id: uuid.UUID,
        *,
        review_status: Optional[str] = None,
        canonical_project_id: Optional[uuid.UUID] = None,
        reviewed_by: Optional[str] = None,
    ) -> DuplicateGroup:
        """Apply a PATCH: canonical first, then status.  At least one is required."""
        if review_status is None and canonical_project_id is None:
            raise InvalidReviewTransition("Nothing to update")
        if review_status is not None and review_status not in REVIEWER_STATUSES:
            raise InvalidReviewTransition(
                f"Reviewers may set {', '.join(REVIEWER_STATUSES)}; got {review_status!r}"
            )

        group: Optional[DuplicateGroup] = None
        if canonical_project_id is not None:
            group = await self.reassign_canonical(group_id, canonical_project_id, reviewed_by)
        if review_status is not None:
            group = await self.set_review_status(group_id, review_status, reviewed_by)
        return group

    async def dissolve(self, group_id: uuid.UUID) -> int:
        if await self._groups.get(group_id) is None:
            raise GroupNotFoundError(f"Duplicate group {group_id} not found")
        detached = await self._groups.dissolve(group_id)
        logger.info(f"Group {group_id} dissolved by reviewer ({detached} programs detached)")
        return detached
