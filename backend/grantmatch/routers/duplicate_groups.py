"""Duplicate-group review router.

Reviewers list groups by status, inspect members, confirm or reject a group,
pick a different canonical program, or dissolve the group.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from grantmatch.deps import get_repositories, require_worker_token
from grantmatch.models.db.duplicate_group import PENDING_REVIEW
from grantmatch.models.duplicate_group import (
    DissolveResponse,
    DuplicateGroupDetail,
    DuplicateGroupListResponse,
    DuplicateGroupResponse,
    DuplicateGroupUpdate,
    GroupMemberResponse,
    PaginationInfo,
)
from grantmatch.repositories.base import Repositories
from grantmatch.services.review_service import (
    CanonicalNotMemberError,
    GroupNotFoundError,
    InvalidReviewTransition,
    ReviewError,
    ReviewService,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/duplicate-groups",
    tags=["duplicate-groups"],
    dependencies=[Depends(require_worker_token)],
)


def _review_http_error(e: ReviewError) -> HTTPException:
    if isinstance(e, GroupNotFoundError):
        return HTTPException(status_code=404, detail="Duplicate group not found")
    if isinstance(e, (InvalidReviewTransition, CanonicalNotMemberError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail="Review action failed")


# ============================================================================
# Read
# ============================================================================


@router.get("", response_model=DuplicateGroupListResponse)
async def list_duplicate_groups(
    status: str = Query(PENDING_REVIEW, description="Review status or 'all'"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    repos: Repositories = Depends(get_repositories),
):
    """
    List duplicate groups for review, newest first.

    Args:
        status: pending_review, auto, confirmed, rejected or all.
        page: 1-based page number.
        page_size: groups per page.

    Returns:
        Groups for the page, pagination info and counts for every status.
    """
    try:
        result = await ReviewService(repos.groups).list_groups(status, page, page_size)
    except ReviewError as e:
        raise _review_http_error(e) from e

    return DuplicateGroupListResponse(
        groups=[DuplicateGroupResponse.model_validate(g) for g in result.groups],
        pagination=PaginationInfo(
            page=result.page,
            page_size=result.page_size,
            total=result.total,
            total_pages=result.total_pages,
        ),
        status_counts=result.status_counts,
    )


@router.get("/{group_id}", response_model=DuplicateGroupDetail)
async def get_duplicate_group(
    group_id: uuid.UUID, repos: Repositories = Depends(get_repositories)
):
    try:
        group, members = await ReviewService(repos.groups).get_group(group_id)
    except ReviewError as e:
        raise _review_http_error(e) from e

    summary = DuplicateGroupResponse.model_validate(group)
    return DuplicateGroupDetail(
        **summary.model_dump(),
        members=[GroupMemberResponse.model_validate(m) for m in members],
    )


# ============================================================================
# Review actions
# ============================================================================


@router.patch("/{group_id}", response_model=DuplicateGroupResponse)
async def update_duplicate_group(
    group_id: uuid.UUID,
    body: DuplicateGroupUpdate,
    repos: Repositories = Depends(get_repositories),
):
    """
    Set a group's review status and/or its canonical program.

    Raises:
        HTTPException 400: status not settable by a reviewer, nothing to
            update, or the canonical program is not a live member.
        HTTPException 404: unknown group.
    """
    try:
        group = await ReviewService(repos.groups).apply_review(
            group_id,
            review_status=body.review_status,
            canonical_project_id=body.canonical_project_id,
            reviewed_by=body.reviewed_by,
        )
    except ReviewError as e:
        raise _review_http_error(e) from e
    return DuplicateGroupResponse.model_validate(group)


@router.delete("/{group_id}", response_model=DissolveResponse)
async def dissolve_duplicate_group(
    group_id: uuid.UUID, repos: Repositories = Depends(get_repositories)
):
    """Detach every member and delete the group."""
    try:
        detached = await ReviewService(repos.groups).dissolve(group_id)
    except ReviewError as e:
        raise _review_http_error(e) from e
    return DissolveResponse(success=True, group_id=group_id, detached_count=detached)
